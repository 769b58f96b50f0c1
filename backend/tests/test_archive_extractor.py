import asyncio
import io
import tarfile

import pytest

from core.errors import ExtractionError
from models.model_models import ModelDescriptor
from services.archive_extractor import ArchiveExtractor

REQUIRED = ("encoder.int8.onnx", "decoder.int8.onnx", "joiner.int8.onnx", "tokens.txt")


def make_descriptor(**overrides):
    params = dict(
        model_id="parakeet-test",
        backend="parakeet",
        download_url="http://127.0.0.1/unused.tar.bz2",
        expected_size_bytes=1000,
        required_files=REQUIRED,
        extract_dir="sherpa-onnx-parakeet-test-int8",
        archive_format="tar.bz2",
        family_keyword="parakeet",
        marker_file="encoder.int8.onnx",
    )
    params.update(overrides)
    return ModelDescriptor(**params)


def make_archive(path, top_dir, files=REQUIRED):
    with tarfile.open(path, "w:bz2") as tar:
        for name in files:
            data = f"{name} weights".encode()
            member = tarfile.TarInfo(f"{top_dir}/{name}")
            member.size = len(data)
            tar.addfile(member, io.BytesIO(data))
    return path


def test_extract_exact_directory(tmp_path):
    archive = make_archive(tmp_path / "model.tar.bz2", "sherpa-onnx-parakeet-test-int8")
    target = tmp_path / "parakeet-test"

    result = asyncio.run(ArchiveExtractor().extract(archive, target, make_descriptor()))

    assert result.model_dir == target
    assert not result.heuristic_match
    assert sorted(p.name for p in target.iterdir()) == sorted(REQUIRED)
    assert not (tmp_path / "temp-extract-parakeet-test").exists()


def test_extract_falls_back_to_family_keyword(tmp_path):
    archive = make_archive(tmp_path / "model.tar.bz2", "sherpa-onnx-nemo-Parakeet-renamed")
    target = tmp_path / "parakeet-test"

    result = asyncio.run(ArchiveExtractor().extract(archive, target, make_descriptor()))

    assert result.heuristic_match
    assert result.source_dir_name == "sherpa-onnx-nemo-Parakeet-renamed"
    assert (target / "tokens.txt").is_file()


def test_extract_replaces_existing_target(tmp_path):
    archive = make_archive(tmp_path / "model.tar.bz2", "sherpa-onnx-parakeet-test-int8")
    target = tmp_path / "parakeet-test"
    target.mkdir()
    (target / "stale.bin").write_text("old")

    asyncio.run(ArchiveExtractor().extract(archive, target, make_descriptor()))

    assert not (target / "stale.bin").exists()
    assert (target / "encoder.int8.onnx").is_file()


def test_missing_marker_file_fails_and_cleans_up(tmp_path):
    archive = make_archive(tmp_path / "model.tar.bz2", "sherpa-onnx-parakeet-test-int8", files=("tokens.txt",))
    target = tmp_path / "parakeet-test"

    with pytest.raises(ExtractionError) as exc_info:
        asyncio.run(ArchiveExtractor().extract(archive, target, make_descriptor()))

    assert "encoder.int8.onnx" in exc_info.value.message
    assert not (tmp_path / "temp-extract-parakeet-test").exists()


def test_unrelated_directory_is_rejected(tmp_path):
    archive = make_archive(tmp_path / "model.tar.bz2", "something-else")

    with pytest.raises(ExtractionError):
        asyncio.run(ArchiveExtractor().extract(archive, tmp_path / "parakeet-test", make_descriptor()))

    assert not (tmp_path / "temp-extract-parakeet-test").exists()


def test_corrupt_archive_reports_tar_failure(tmp_path):
    archive = tmp_path / "model.tar.bz2"
    archive.write_bytes(b"this is not bzip2 data")

    with pytest.raises(ExtractionError) as exc_info:
        asyncio.run(ArchiveExtractor().extract(archive, tmp_path / "parakeet-test", make_descriptor()))

    assert exc_info.value.context["exit_code"] != 0
