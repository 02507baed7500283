import sys

from loguru import logger
import pytest

from animbox.log import configure_logging


@pytest.fixture
def restore_loguru():
    yield
    logger.remove()
    logger.add(sys.stderr)


def test_file_sink_receives_messages_at_level(tmp_path, restore_loguru):
    log_file = tmp_path / "animbox.log"
    configure_logging("warning", str(log_file))

    logger.info("quiet lifecycle event")
    logger.warning("health check missed")
    logger.complete()
    logger.remove()

    text = log_file.read_text(encoding="utf-8")
    assert "health check missed" in text
    assert "WARNING" in text
    assert "quiet lifecycle event" not in text
    assert "test_log:test_file_sink_receives_messages_at_level" in text
