import logging
import pytest
from tryon_vault.config.logging import configure_logging, get_logger, mask_token


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    saved = list(root.handlers), root.level
    yield
    root.handlers[:] = saved[0]
    root.setLevel(saved[1])
    for name in ("session", "sweeper", "replicate", "orchestrator", "rate_limiter"):
        component = logging.getLogger(name)
        for handler in component.handlers:
            handler.close()
        component.handlers.clear()
        component.propagate = True


def test_configure_logging_writes_component_files(tmp_path, restore_logging):
    config = configure_logging(tmp_path)

    get_logger("session.store").info("Session created", token=mask_token("a" * 64))
    get_logger("replicate.client").warning("Replicate rate limit hit", retry_after=2.0)
    for handler in logging.getLogger("session").handlers + logging.getLogger("replicate").handlers:
        handler.flush()

    assert config.logs_dir == tmp_path
    assert "aaaaaaaa..." in config.session_log.read_text()
    assert "Replicate rate limit hit" in config.upstream_log.read_text()
    assert logging.getLogger("rate_limiter").propagate is False


def test_mask_token():
    assert mask_token("0123456789abcdef") == "01234567..."
    assert mask_token(None) == "<none>"
    assert mask_token("") == "<none>"
