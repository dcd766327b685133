from loguru import logger

from yari.config.schema import Config
from yari.core.logger import configure_logger


def test_quiet_console_still_writes_file(tmp_path, capsys):
    config = Config()
    config.logging.file_path = str(tmp_path / "logs" / "yari.log")

    configure_logger(config, console=False)
    logger.info("session s1 connected")
    logger.complete()
    logger.remove()

    assert "session s1 connected" in (tmp_path / "logs" / "yari.log").read_text()
    assert "session s1 connected" not in capsys.readouterr().err


def test_file_sink_can_be_disabled(tmp_path):
    config = Config()
    config.logging.file_enabled = False
    config.logging.file_path = str(tmp_path / "yari.log")

    configure_logger(config, console=False)
    logger.info("nothing to see")
    logger.remove()

    assert not (tmp_path / "yari.log").exists()
