import random
import string

from wordslop_lobby.db.store import DocumentStore

LOBBY_ID_CHARS = string.ascii_uppercase + string.digits


def generate_lobby_id_sync(length: int = 6) -> str:
    """
    Random lobby id without a uniqueness check.
    Format: uppercase letters and digits (e.g. "AB12CD").
    """
    return ''.join(random.choice(LOBBY_ID_CHARS) for _ in range(length))


async def generate_unique_lobby_id(store: DocumentStore, collection: str, length: int = 6) -> str:
    """
    Generate a lobby id that is not taken in `collection`.

    Creation still guards against a collision between this check and the write.
    """
    while True:
        lobby_id = generate_lobby_id_sync(length)
        snapshot = await store.get(collection, lobby_id)
        if not snapshot.exists:
            return lobby_id
