import json

import pytest

from embedgate.config import Pool
from embedgate.service import assembler as assembler_module
from embedgate.service.assembler import (
    AssemblyState,
    HubArtifactSource,
    PipelineAssembler,
    read_pooling,
)
from embedgate.service.errors import (
    BackendConstructionError,
    DescriptorError,
    DownloadError,
    HealthCheckError,
    StartupError,
    TokenizerLoadError,
)
from embedgate.service.model_backend import ClassifierModel, EmbeddingModel, StubBackend
from tests.helpers import build_engine, make_settings


async def test_assembly_reaches_ready(model_dir):
    assembler, engine = await build_engine(make_settings(model_dir))
    try:
        assert assembler.state == AssemblyState.READY
        assert assembler.failure is None
        assert assembler.info.model_id == str(model_dir)
        assert assembler.info.limits.max_input_length == 512
        assert assembler.info.model_type == EmbeddingModel(pooling=Pool.CLS)
        assert not engine.is_classifier
    finally:
        await engine.close()


async def test_classifier_assembly(classifier_dir):
    assembler, engine = await build_engine(make_settings(classifier_dir))
    try:
        assert engine.is_classifier
        assert assembler.info.model_type == ClassifierModel(
            id2label={"0": "negative", "1": "positive"},
            label2id={"negative": 0, "positive": 1},
        )
    finally:
        await engine.close()


async def test_assembly_runs_once(model_dir):
    assembler, engine = await build_engine(make_settings(model_dir))
    try:
        with pytest.raises(RuntimeError):
            await assembler.assemble()
    finally:
        await engine.close()


async def test_failed_assembly_is_terminal(tmp_path):
    assembler = PipelineAssembler(make_settings(tmp_path / "missing-dir-model"))
    assembler.artifact_source = lambda model_id, revision: tmp_path

    with pytest.raises(DescriptorError):
        await assembler.assemble()
    assert assembler.state == AssemblyState.FAILED

    with pytest.raises(RuntimeError):
        await assembler.assemble()


async def test_missing_config_fails_while_resolving(tmp_path):
    empty = tmp_path / "empty"
    empty.mkdir()
    assembler = PipelineAssembler(make_settings(empty))

    with pytest.raises(DescriptorError) as excinfo:
        await assembler.assemble()

    assert excinfo.value.state == AssemblyState.ARTIFACTS_RESOLVING.value
    assert assembler.failure is excinfo.value


async def test_download_failure(model_dir):
    def broken_source(model_id, revision):
        raise DownloadError("hub unreachable")

    assembler = PipelineAssembler(make_settings(model_dir), artifact_source=broken_source)
    with pytest.raises(DownloadError):
        await assembler.assemble()
    assert assembler.state == AssemblyState.FAILED
    assert assembler.failure.state == AssemblyState.ARTIFACTS_RESOLVING.value


async def test_missing_tokenizer_fails_after_config(model_dir):
    (model_dir / "tokenizer.json").unlink()
    assembler = PipelineAssembler(make_settings(model_dir))

    with pytest.raises(TokenizerLoadError) as excinfo:
        await assembler.assemble()

    assert excinfo.value.state == AssemblyState.CONFIG_PARSED.value


async def test_backend_construction_failure_wrapped(model_dir):
    def exploding_factory(*args, **kwargs):
        raise OSError("no device")

    assembler = PipelineAssembler(make_settings(model_dir), backend_factory=exploding_factory)
    with pytest.raises(BackendConstructionError) as excinfo:
        await assembler.assemble()

    assert "no device" in str(excinfo.value)
    assert excinfo.value.state == AssemblyState.TOKENIZER_READY.value


async def test_unhealthy_backend_fails_startup(model_dir):
    assembler = PipelineAssembler(make_settings(model_dir), backend_extra={"healthy": False})

    with pytest.raises(HealthCheckError) as excinfo:
        await assembler.assemble()

    assert excinfo.value.state == AssemblyState.BACKEND_CONSTRUCTED.value
    assert excinfo.value.status_code == 503
    assert isinstance(excinfo.value, StartupError)


async def test_invalid_batch_token_budget_fails(model_dir):
    assembler = PipelineAssembler(make_settings(model_dir, max_batch_tokens=128))
    with pytest.raises(DescriptorError):
        await assembler.assemble()
    assert assembler.state == AssemblyState.FAILED


async def test_backend_batch_ceiling_wins(model_dir):
    assembler, engine = await build_engine(
        make_settings(model_dir, max_batch_requests=16),
        backend_extra={"max_batch_size": 4},
    )
    try:
        assert engine.queue.max_batch_requests == 4
    finally:
        await engine.close()


async def test_settings_batch_ceiling_wins(model_dir):
    assembler, engine = await build_engine(
        make_settings(model_dir, max_batch_requests=2),
        backend_extra={"max_batch_size": 4},
    )
    try:
        assert engine.queue.max_batch_requests == 2
        assert isinstance(engine.backend, StubBackend)
    finally:
        await engine.close()


async def test_pooling_setting_overrides_artifacts(model_dir):
    assembler, engine = await build_engine(make_settings(model_dir, pooling=Pool.MEAN))
    try:
        assert assembler.info.model_type == EmbeddingModel(pooling=Pool.MEAN)
    finally:
        await engine.close()


def test_read_pooling_defaults_to_cls(tmp_path):
    assert read_pooling(tmp_path) == Pool.CLS


def test_read_pooling_mean(tmp_path):
    (tmp_path / "1_Pooling").mkdir()
    (tmp_path / "1_Pooling" / "config.json").write_text(
        json.dumps({"pooling_mode_cls_token": False, "pooling_mode_mean_tokens": True})
    )
    assert read_pooling(tmp_path) == Pool.MEAN


def test_read_pooling_unsupported_mode(tmp_path):
    (tmp_path / "1_Pooling").mkdir()
    (tmp_path / "1_Pooling" / "config.json").write_text(
        json.dumps({"pooling_mode_max_tokens": True})
    )
    with pytest.raises(DescriptorError):
        read_pooling(tmp_path)


def test_hub_source_uses_local_directory(model_dir, monkeypatch):
    def fail(**kwargs):
        raise AssertionError("local directories must not hit the hub")

    monkeypatch.setattr(assembler_module, "snapshot_download", fail)
    assert HubArtifactSource()(str(model_dir), "main") == model_dir


def test_hub_source_downloads_with_patterns(tmp_path, monkeypatch):
    calls = []

    def fake_download(**kwargs):
        calls.append(kwargs)
        return str(tmp_path)

    monkeypatch.setattr(assembler_module, "snapshot_download", fake_download)
    source = HubArtifactSource(token="hf_secret", cache_dir=str(tmp_path / "cache"))

    assert source("BAAI/bge-small-en-v1.5", "main") == tmp_path
    assert calls[0]["repo_id"] == "BAAI/bge-small-en-v1.5"
    assert calls[0]["revision"] == "main"
    assert calls[0]["token"] == "hf_secret"
    assert "tokenizer.json" in calls[0]["allow_patterns"]


def test_hub_source_wraps_network_errors(monkeypatch):
    def unreachable(**kwargs):
        raise ConnectionError("connection refused")

    monkeypatch.setattr(assembler_module, "snapshot_download", unreachable)
    with pytest.raises(DownloadError) as excinfo:
        HubArtifactSource()("org/does-not-exist", "main")
    assert "connection refused" in str(excinfo.value)
    assert excinfo.value.status_code == 500
