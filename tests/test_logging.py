import json
import logging

import pytest
import pytz

from wordslop_lobby.logging import (
    LogSection,
    LogSubsection,
    RabbitMQHandler,
    StructuredFormatter,
    get_logger,
    log_models,
    setup_application_logging,
)


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.lines = []

    def emit(self, record):
        self.lines.append(self.format(record))


@pytest.fixture()
def captured():
    handler = ListHandler()
    handler.setFormatter(StructuredFormatter())
    logger = logging.getLogger("tests.structured")
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    yield handler
    logger.removeHandler(handler)


def test_structured_entry(captured):
    logger = get_logger("tests.structured")

    logger.warning(
        section=LogSection.REAPER,
        subsection=LogSubsection.REAPER.PLAYER_EVICTED,
        message="Evicting bob",
        user_id="bob",
        lobby_id="LOBBY1",
        extra_data={"silent_sec": 12.0}
    )

    entry = json.loads(captured.lines[0])
    assert entry["level"] == "WARNING"
    assert entry["section"] == "reaper"
    assert entry["subsection"] == "player_evicted"
    assert entry["user_id"] == "bob"
    assert entry["lobby_id"] == "LOBBY1"
    assert entry["extra_data"]["silent_sec"] == 12.0
    assert entry["extra_data"]["source_function"] == "test_structured_entry"
    assert len(entry["log_id"]) == 8


def test_level_filter(captured):
    logging.getLogger("tests.structured").setLevel(logging.INFO)

    get_logger("tests.structured").debug(
        section=LogSection.SYNC, subsection=LogSubsection.SYNC.POLL, message="quiet")

    assert captured.lines == []


def test_plain_records_are_still_json(captured):
    logging.getLogger("tests.structured").info("plain message")

    assert json.loads(captured.lines[0])["message"] == "plain message"


def test_bound_logger_adds_ids(captured):
    logger = get_logger("tests.structured").bind(lobby_id="LOBBY1")

    logger.info(section=LogSection.LOBBY, subsection=LogSubsection.LOBBY.HEARTBEAT, message="beat", user_id="amy")

    entry = json.loads(captured.lines[0])
    assert (entry["lobby_id"], entry["user_id"]) == ("LOBBY1", "amy")


def test_rabbitmq_payload_of_plain_record():
    record = logging.LogRecord("motor", logging.WARNING, __file__, 1, "slow query %s", ("x",), None)

    payload = RabbitMQHandler.payload(record)

    assert payload["message"] == "slow query x"
    assert payload["subsection"] == "motor"
    assert payload["level"] == "WARNING"


def test_setup_writes_json_file(settings, tmp_path):
    root_logger = logging.getLogger()
    saved_handlers, saved_level = list(root_logger.handlers), root_logger.level
    log_file = tmp_path / "logs" / "lobby.log"
    try:
        setup_application_logging(settings.model_copy(update={
            "LOG_FILE": str(log_file),
            "CONSOLE_LOGGING": False,
            "LOG_TIMEZONE": "Europe/Warsaw",
        }))
        get_logger("tests.setup").warning(
            section=LogSection.SYSTEM, subsection=LogSubsection.SYSTEM.STARTUP, message="hello")
        for handler in root_logger.handlers:
            handler.flush()
    finally:
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root_logger.addHandler(handler)
        root_logger.setLevel(saved_level)
        log_models.log_timezone = pytz.utc

    lines = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
    assert [line["message"] for line in lines] == ["Structured logging initialized", "hello"]
    assert lines[1]["timestamp"][-6:] in ("+01:00", "+02:00")
