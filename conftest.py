import os
import shutil
from pathlib import Path

import pytest

TEST_DATA_DIR = Path("data-tests")
os.environ["DATA_DIR"] = str(TEST_DATA_DIR)

from backend import runtime  # noqa: E402
from microscope.llm import clear_models_cache  # noqa: E402


@pytest.fixture(autouse=True)
def clean_test_data():
    """Wipe and re-init data-tests/ before every test."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    runtime.init_runtime(TEST_DATA_DIR)
    clear_models_cache()
    yield
    # leave data-tests around after tests for inspection; CI can ignore it
