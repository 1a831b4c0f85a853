import sys
from pathlib import Path
import pytest

# Add project root to sys.path
# This ensures that 'pluma_server' is importable as a top-level module during tests
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


@pytest.fixture
def override_config():
    """Temporarily replace frozen config values: `override_config("SYSTEM", KEY=value)`."""
    from pluma_server.config import config

    saved = []

    def _override(section: str, **values):
        node = getattr(config, section)
        config.defrost()
        try:
            for key, value in values.items():
                saved.append((node, key, getattr(node, key)))
                setattr(node, key, value)
        finally:
            config.freeze()

    try:
        yield _override
    finally:
        config.defrost()
        for node, key, value in reversed(saved):
            setattr(node, key, value)
        config.freeze()


@pytest.fixture
def user_config_dir(tmp_path, override_config):
    path = tmp_path / "user-configs"
    path.mkdir(parents=True, exist_ok=True)
    override_config("SYSTEM", USER_CONFIG_DIR=str(path))
    return path
