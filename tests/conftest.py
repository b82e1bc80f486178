import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Configure before any embedgate import reads the environment
_test_tmp_dir = tempfile.mkdtemp(prefix="embedgate_test_")
os.environ.setdefault("SCRATCH_DIR", _test_tmp_dir)
os.environ.setdefault("BACKEND", "stub")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from embedgate.config import reset_settings_cache  # noqa: E402
from tests.helpers import write_model_dir  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def model_dir(tmp_path):
    """Artifact directory for a small BERT-style embedding model."""
    return write_model_dir(tmp_path / "bert-tiny")


@pytest.fixture
def classifier_dir(tmp_path):
    """Artifact directory for a two-label sequence classifier."""
    return write_model_dir(
        tmp_path / "bert-tiny-cls",
        config={
            "architectures": ["BertForSequenceClassification"],
            "model_type": "bert",
            "max_position_embeddings": 512,
            "pad_token_id": 0,
            "id2label": {"0": "negative", "1": "positive"},
            "label2id": {"negative": 0, "positive": 1},
        },
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
