"""
pytest configuration

Shared fixtures; async tests run on asyncio through the anyio plugin.
"""

import os
import tempfile
from pathlib import Path

import pytest


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def temp_dir():
    """Temporary directory fixture"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_config_dict():
    """Sample config mapping in the YAML layout"""
    return {
        "LLM": {
            "provider": "openai",
            "key": "test-api-key",
            "api": "https://api.test.com/v1",
            "model": "test-model",
            "temperature": 0.7,
            "max_tokens": 2000,
        },
        "Session": {
            "max_tool_rounds": 4,
            "tool_timeout_s": 5,
        },
        "Cleanup": {
            "custom_words": ["Obsidian"],
        },
        "log_level": "debug",
    }


@pytest.fixture
def sample_config_yaml(temp_dir, sample_config_dict):
    """Write the sample config to a YAML file"""
    import yaml

    config_path = temp_dir / "config.user.yaml"
    with open(config_path, "w", encoding="utf-8") as f:
        yaml.dump(sample_config_dict, f)

    return config_path


@pytest.fixture
def sample_image_path(temp_dir):
    """Small PNG on disk"""
    from PIL import Image

    img = Image.new("RGB", (100, 60), color="red")
    img_path = temp_dir / "test_image.png"
    img.save(img_path)

    return img_path


@pytest.fixture(autouse=True)
def reset_environment():
    """Restore environment variables after every test"""
    original_env = os.environ.copy()
    yield
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture(autouse=True)
def reset_settings_cache():
    from anysession.config.settings import clear_settings_cache

    clear_settings_cache()
    yield
    clear_settings_cache()


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: slow tests")
    config.addinivalue_line("markers", "integration: integration tests")
    config.addinivalue_line("markers", "unit: unit tests")
