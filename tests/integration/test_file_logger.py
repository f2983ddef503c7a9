"""
Tests for the file logger utility
"""

import logging

from agents.shared.file_logger import get_logger, setup_file_logger


class TestFileLogger:
    """Test log file setup"""

    def test_writes_to_rotating_file(self, tmp_path):
        logger = setup_file_logger(
            "test-service",
            log_level="DEBUG",
            output_dir=str(tmp_path),
            console_output=False,
            attach_to=()
        )
        try:
            logger.debug("debug line")
            logger.warning("warning line")
            for handler in logger.handlers:
                handler.flush()

            files = list(tmp_path.glob("test-service_*.log"))
            assert len(files) == 1
            content = files[0].read_text(encoding="utf-8")
            assert "debug line" in content
            assert "test-service - WARNING - warning line" in content
        finally:
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)

    def test_attached_loggers_share_handlers(self, tmp_path):
        setup_file_logger(
            "test-owner",
            output_dir=str(tmp_path),
            console_output=False,
            attach_to=("test-owner.child-package",)
        )
        owner = get_logger("test-owner")
        attached = logging.getLogger("test-owner.child-package")
        try:
            assert attached.handlers == owner.handlers
            assert attached.propagate is False
            assert attached.level == logging.INFO
        finally:
            for target in (owner, attached):
                for handler in list(target.handlers):
                    handler.close()
                    target.removeHandler(handler)
