"""Tests for the analysis task state machine."""

import asyncio
import logging
import threading
from pathlib import Path

import pytest

from container_layer_sizes.core.task import Task, TaskState, describe_state
from container_layer_sizes.exceptions import (
    ManifestDecodeError,
    MediaTypeMismatchError,
    ReferenceParseError,
    TaskStateError,
    TransportError,
)
from container_layer_sizes.tar.extractor import TarLayerExtractor
from container_layer_sizes.tar.manifest import OCI_MANIFEST_MEDIA_TYPE
from container_layer_sizes.tar.models import Descriptor
from container_layer_sizes.transport.layout import OciLayout, OciLayoutCopier
from container_layer_sizes.utils.digest import split_digest
from tests.helpers import SAMPLE_LAYERS, FakePuller, make_oci_layout, write_blob

IMAGE = "localhost:5000/team/app:1.0"


def _task(puller, storage_dir, scratch_root, image=IMAGE, timeout=30.0):
    return Task.create(
        image,
        storage_dir,
        puller,
        OciLayoutCopier(),
        timeout=timeout,
        scratch_root=scratch_root,
    )


def test_describe_state():
    assert describe_state(TaskState.NEW) == "Task is new"
    assert describe_state(4) == "Task is finished"
    with pytest.raises(TaskStateError):
        describe_state(42)


def test_create_rejects_invalid_reference(storage_dir, scratch_root):
    with pytest.raises(ReferenceParseError):
        _task(FakePuller(), storage_dir, scratch_root, image="golang:1.16:foobar")


@pytest.mark.asyncio
async def test_successful_task_finishes_with_layers(storage_dir, scratch_root):
    puller = FakePuller()
    task = _task(puller, storage_dir, scratch_root)
    assert task.state == TaskState.NEW
    assert task.scratch_dir.parent == scratch_root

    await task.process()

    assert task.state == TaskState.FINISHED
    assert task.error is None
    assert not task.abandoned
    hex_digests = [split_digest(d)[1] for d in puller.layer_digests]
    assert list(task.layers) == hex_digests

    first = task.layers[hex_digests[0]]
    assert first.total_size == 69
    assert first.subdirs["usr"].subdirs["bin"].files == {"cat": 64}
    assert first.created_by == "/bin/sh -c #(nop) ADD file:rootfs in /"
    assert task.layers[hex_digests[1]].created_by == "/bin/sh -c echo localhost > /etc/hosts"

    for digest, layer in zip(puller.layer_digests, SAMPLE_LAYERS):
        assert task.progress.entries[digest].downloaded == len(layer)
        assert task.progress.entries[digest].total_size == len(layer)

    assert task.image_info.tag == "1.0"
    assert task.image_info.os == "linux"
    assert task.manifest_digest.startswith("sha256:")

    snapshot = task.snapshot()
    assert snapshot["state"] == 4
    assert snapshot["state_description"] == "Task is finished"
    assert snapshot["error"] == ""
    assert snapshot["image"] == IMAGE

    await task.cleanup()


@pytest.mark.asyncio
async def test_wrong_layer_media_type_ends_in_error(storage_dir, scratch_root):
    puller = FakePuller(layer_media_type="application/vnd.oci.image.layer.v1.tar")
    task = _task(puller, storage_dir, scratch_root)

    await task.process()

    assert task.state == TaskState.ERROR
    assert isinstance(task.error, MediaTypeMismatchError)
    assert task.layers == {}
    assert "Invalid media type" in task.snapshot()["error"]
    await task.cleanup()


@pytest.mark.asyncio
async def test_pull_failure_ends_in_error(storage_dir, scratch_root):
    task = _task(FakePuller(fail=True), storage_dir, scratch_root)

    await task.process()

    assert task.state == TaskState.ERROR
    assert isinstance(task.error, TransportError)
    assert not task.abandoned
    await task.cleanup()


@pytest.mark.asyncio
async def test_cancel_during_pull_abandons_task(storage_dir, scratch_root):
    puller = FakePuller(block=True)
    task = _task(puller, storage_dir, scratch_root)

    processing = asyncio.ensure_future(task.process())
    await asyncio.wait_for(puller.pull_started.wait(), timeout=5)
    task.cancel()
    await asyncio.wait_for(processing, timeout=5)

    assert task.abandoned
    assert task.state == TaskState.PULLING
    assert task.error is None
    await task.cleanup()


@pytest.mark.asyncio
async def test_deadline_abandons_task(storage_dir, scratch_root, caplog):
    task = _task(FakePuller(block=True), storage_dir, scratch_root, timeout=0.2)

    with caplog.at_level(logging.ERROR):
        await asyncio.wait_for(task.process(), timeout=5)

    assert task.abandoned
    assert task.state == TaskState.PULLING
    assert task.error is None
    assert "deadline" in caplog.text
    await task.cleanup()


@pytest.mark.asyncio
async def test_cancelled_task_never_starts_pulling(storage_dir, scratch_root):
    puller = FakePuller()
    task = _task(puller, storage_dir, scratch_root)
    task.cancel()

    await task.process()

    assert task.abandoned
    assert puller.pulled == []
    assert not puller.pull_started.is_set()


@pytest.mark.asyncio
async def test_task_cannot_be_processed_twice(storage_dir, scratch_root):
    task = _task(FakePuller(), storage_dir, scratch_root)
    await task.process()

    with pytest.raises(TaskStateError):
        await task.process()
    await task.cleanup()


@pytest.mark.asyncio
async def test_local_oci_image_is_not_pulled(tmp_path, storage_dir, scratch_root):
    make_oci_layout(tmp_path / "images", "app", SAMPLE_LAYERS)
    puller = FakePuller()
    task = _task(puller, storage_dir, scratch_root, image=f"oci:{tmp_path / 'images'}:app")

    await task.process()

    assert task.state == TaskState.FINISHED
    assert puller.pulled == []
    assert len(task.layers) == len(SAMPLE_LAYERS)
    # no history in the image config, so every layer lacks a command
    assert all(layer.created_by == "" for layer in task.layers.values())
    await task.cleanup()


@pytest.mark.asyncio
async def test_missing_history_is_logged(storage_dir, scratch_root, caplog):
    puller = FakePuller(history=[{"created_by": "ADD rootfs"}])
    task = _task(puller, storage_dir, scratch_root)

    with caplog.at_level(logging.WARNING):
        await task.process()

    assert task.state == TaskState.FINISHED
    assert "has no history entry" in caplog.text
    await task.cleanup()


@pytest.mark.asyncio
async def test_cleanup_removes_scratch_dir(storage_dir, scratch_root):
    task = _task(FakePuller(), storage_dir, scratch_root)
    await task.process()
    assert task.scratch_dir.exists()

    await task.cleanup()
    await task.cleanup()

    assert not task.scratch_dir.exists()
    assert task.cancelled


@pytest.mark.asyncio
async def test_history_entry(storage_dir, scratch_root):
    task = _task(FakePuller(), storage_dir, scratch_root)
    with pytest.raises(TaskStateError):
        task.history_entry()

    await task.process()
    entry = task.history_entry()

    assert entry.tags == ["1.0"]
    assert entry.contents is task.layers
    assert entry.inspect_info["os"] == "linux"
    assert task.history_entry(tags=["1.0", "stable"]).tags == ["1.0", "stable"]
    await task.cleanup()


@pytest.mark.asyncio
async def test_manifest_that_is_not_an_object_ends_in_error(
    tmp_path, storage_dir, scratch_root
):
    images = OciLayout(tmp_path / "images")
    await images.init()
    digest = write_blob(tmp_path / "images", b"[]")
    await images.tag_manifest(Descriptor(OCI_MANIFEST_MEDIA_TYPE, digest, 2), "app")
    task = _task(FakePuller(), storage_dir, scratch_root, image=f"oci:{tmp_path / 'images'}:app")

    await task.process()

    assert task.state == TaskState.ERROR
    assert isinstance(task.error, ManifestDecodeError)
    await task.cleanup()


class GatedExtractor(TarLayerExtractor):
    """Blocks inside the first layer until ``release`` is set."""

    def __init__(self) -> None:
        self.reading = threading.Event()
        self.release = threading.Event()
        self.blob_present_after_release = None

    def entries(self, blob_path):
        for i, entry in enumerate(super().entries(blob_path)):
            if i == 0:
                self.reading.set()
                self.release.wait(timeout=10)
                self.blob_present_after_release = Path(blob_path).exists()
            yield entry


@pytest.mark.asyncio
async def test_cleanup_waits_for_layer_reading_thread(storage_dir, scratch_root):
    extractor = GatedExtractor()
    task = Task.create(
        IMAGE,
        storage_dir,
        FakePuller(),
        OciLayoutCopier(),
        extractor=extractor,
        timeout=30,
        scratch_root=scratch_root,
    )
    processing = asyncio.ensure_future(task.process())
    loop = asyncio.get_running_loop()
    assert await loop.run_in_executor(None, extractor.reading.wait, 5)

    cleanup = asyncio.ensure_future(task.cleanup())
    await asyncio.sleep(0.1)
    assert not cleanup.done()
    assert task.scratch_dir.exists()

    extractor.release.set()
    await asyncio.wait_for(cleanup, timeout=5)
    await asyncio.wait_for(processing, timeout=5)

    assert extractor.blob_present_after_release
    assert not task.scratch_dir.exists()
    assert task.abandoned
    assert task.state == TaskState.ANALYZING
