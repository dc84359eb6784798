"""Tests for the download, CD and floppy creation and remote upload steps."""

import os
import subprocess
from unittest import mock

import pytest

from vsphere_builder.cache import LocalCache, UploadedObject
from vsphere_builder.config import CDConfig, FloppyConfig, IsoConfig, LocationConfig
from vsphere_builder.errors import BuildError, DriverError
from vsphere_builder.pipeline import (
    STATE_CANCELLED,
    STATE_CD_PATH,
    STATE_DATASTORE,
    STATE_FLOPPY_PATH,
    STATE_ISO_PATH,
    STATE_ISO_REMOTE_PATH,
    STATE_REMOTE_CACHE_CLEANUP,
    STATE_SOURCE_IMAGE_URL,
    STATE_UPLOADS,
    StepAction,
)
from vsphere_builder.steps.floppy import StepCreateFloppy
from vsphere_builder.steps.media import StepCreateCD, StepDownload, StepRemoteUpload

URL_A = "https://mirror-a.example.com/ubuntu.iso"
URL_B = "https://mirror-b.example.com/ubuntu.iso"


@pytest.fixture
def datastore(state):
    ds = mock.MagicMock()
    ds.name = "datastore1"
    ds.file_exists.return_value = False
    ds.dir_exists.return_value = True
    ds.resolve_path.side_effect = lambda p: f"[datastore1] {p}"
    state.put(STATE_DATASTORE, ds)
    return ds


@pytest.fixture
def iso(tmp_path):
    return IsoConfig(iso_urls=[URL_A, URL_B], local_cache_dir=str(tmp_path / "cache"))


location = LocationConfig(vm_name="ubuntu", host="esxi1", datastore="datastore1")


# -- download --

@mock.patch.object(LocalCache, "fetch")
def test_download_skipped_when_remote_cache_has_iso(mock_fetch, ctx, state, datastore, iso):
    """A copy already in the datastore cache is reused without downloading."""
    datastore.file_exists.return_value = True

    assert StepDownload(iso, location).run(ctx, state) is StepAction.CONTINUE

    mock_fetch.assert_not_called()
    assert state.get(STATE_ISO_PATH) == LocalCache(iso.local_cache_dir).target_path(URL_A)
    assert state.get(STATE_SOURCE_IMAGE_URL) == URL_A


@mock.patch.object(LocalCache, "fetch")
def test_download_tries_next_url(mock_fetch, ctx, state, datastore, iso):
    mock_fetch.side_effect = [BuildError("mirror down"), "/cache/b.iso"]

    StepDownload(iso, location).run(ctx, state)

    assert mock_fetch.call_count == 2
    assert state.get(STATE_ISO_PATH) == "/cache/b.iso"
    assert state.get(STATE_SOURCE_IMAGE_URL) == URL_B


@mock.patch.object(LocalCache, "fetch")
def test_download_all_urls_fail(mock_fetch, ctx, state, datastore, iso):
    mock_fetch.side_effect = BuildError("mirror down")

    with pytest.raises(BuildError, match="error downloading ISO"):
        StepDownload(iso, location).run(ctx, state)


@mock.patch.object(LocalCache, "fetch")
def test_download_remote_overwrite(mock_fetch, ctx, state, datastore, iso):
    """With remote overwrite the cached copy is deleted and the ISO fetched again."""
    datastore.file_exists.return_value = True
    iso.remote_cache_overwrite = True
    mock_fetch.return_value = "/cache/a.iso"

    StepDownload(iso, location).run(ctx, state)

    datastore.delete.assert_called_once()
    assert state.get(STATE_ISO_PATH) == "/cache/a.iso"


@mock.patch.object(LocalCache, "fetch")
def test_download_cancel_is_not_retried(mock_fetch, ctx, state, datastore, iso):
    mock_fetch.side_effect = BuildError("interrupted")
    ctx.cancel()

    with pytest.raises(BuildError, match="interrupted"):
        StepDownload(iso, location).run(ctx, state)
    assert mock_fetch.call_count == 1


# -- create CD --

def test_create_cd_without_files(ctx, state):
    assert StepCreateCD(CDConfig()).run(ctx, state) is StepAction.CONTINUE
    assert STATE_CD_PATH not in state


@mock.patch("vsphere_builder.steps.media.find_iso_tool", return_value=None)
def test_create_cd_without_tool(mock_tool, ctx, state, tmp_path):
    with pytest.raises(BuildError, match="ISO creation tool"):
        StepCreateCD(CDConfig(files=[str(tmp_path)])).run(ctx, state)


@mock.patch("vsphere_builder.steps.media.subprocess.run")
@mock.patch("vsphere_builder.steps.media.find_iso_tool", return_value="/usr/bin/xorriso")
def test_create_cd(mock_tool, mock_run, ctx, state, tmp_path):
    (tmp_path / "user-data").write_text("#cloud-config\n")
    (tmp_path / "meta-data").write_text("")
    step = StepCreateCD(CDConfig(files=[str(tmp_path / "*-data")], label="cidata"))

    step.run(ctx, state)

    cmd = mock_run.call_args.args[0]
    assert cmd[:3] == ["/usr/bin/xorriso", "-as", "mkisofs"]
    assert cmd[cmd.index("-volid") + 1] == "cidata"
    staging = cmd[-1]
    assert sorted(os.listdir(staging)) == ["meta-data", "user-data"]
    assert state.get(STATE_CD_PATH).endswith("vsphere-builder-cd.iso")

    step.cleanup(state)
    assert not os.path.exists(staging)


@mock.patch("vsphere_builder.steps.media.find_iso_tool", return_value="/usr/bin/mkisofs")
def test_create_cd_missing_file(mock_tool, ctx, state, tmp_path):
    step = StepCreateCD(CDConfig(files=[str(tmp_path / "nope")]))

    with pytest.raises(BuildError, match="does not exist"):
        step.run(ctx, state)
    step.cleanup(state)


@mock.patch("vsphere_builder.steps.media.subprocess.run")
@mock.patch("vsphere_builder.steps.media.find_iso_tool", return_value="/usr/bin/genisoimage")
def test_create_cd_tool_failure(mock_tool, mock_run, ctx, state, tmp_path):
    (tmp_path / "a.cfg").write_text("x")
    mock_run.side_effect = subprocess.CalledProcessError(1, "genisoimage", stderr="bad option\n")

    with pytest.raises(BuildError, match="bad option"):
        StepCreateCD(CDConfig(files=[str(tmp_path / "a.cfg")])).run(ctx, state)


# -- floppy creation --

def test_create_floppy_without_files(ctx, state):
    assert StepCreateFloppy(FloppyConfig(local_path="/tmp/a.flp")).run(ctx, state) is StepAction.CONTINUE
    assert STATE_FLOPPY_PATH not in state


@mock.patch("vsphere_builder.steps.floppy.shutil.which", return_value=None)
def test_create_floppy_without_tools(mock_which, ctx, state):
    with pytest.raises(BuildError, match="install mtools"):
        StepCreateFloppy(FloppyConfig(content={"ks.cfg": ""})).run(ctx, state)


@mock.patch("vsphere_builder.steps.floppy.subprocess.run")
@mock.patch("vsphere_builder.steps.floppy.shutil.which", side_effect=lambda name: f"/usr/sbin/{name}")
def test_create_floppy(mock_which, mock_run, ctx, state, tmp_path):
    (tmp_path / "ks.cfg").write_text("from file")
    (tmp_path / "drivers").mkdir()
    (tmp_path / "drivers" / "pvscsi.inf").write_text("inf")
    config = FloppyConfig(
        files=[str(tmp_path / "*.cfg")],
        dirs=[str(tmp_path / "drivers") + "/"],
        content={"ks.cfg": "inline", "scripts/setup.sh": "#!/bin/sh\n"},
        label="BOOT",
    )
    step = StepCreateFloppy(config)

    step.run(ctx, state)

    image = state.get(STATE_FLOPPY_PATH)
    assert image.endswith("vsphere-builder.flp")
    mkfs, mcopy = (c.args[0] for c in mock_run.call_args_list)
    assert mkfs == ["/usr/sbin/mkfs.fat", "-C", "-n", "BOOT", image, "1440"]
    assert mcopy[:5] == ["/usr/sbin/mcopy", "-i", image, "-s", "-o"]
    assert mcopy[-1] == "::/"
    staged = mcopy[5:-1]
    assert [os.path.basename(p) for p in staged] == ["drivers", "ks.cfg", "scripts"]
    with open(staged[1]) as f:
        assert f.read() == "inline"
    assert os.path.exists(os.path.join(staged[0], "pvscsi.inf"))
    assert os.path.exists(os.path.join(staged[2], "setup.sh"))

    step.cleanup(state)
    assert not os.path.exists(os.path.dirname(image))


@mock.patch("vsphere_builder.steps.floppy.subprocess.run")
@mock.patch("vsphere_builder.steps.floppy.shutil.which", side_effect=lambda name: f"/usr/sbin/{name}")
def test_create_floppy_failures(mock_which, mock_run, ctx, state, tmp_path):
    step = StepCreateFloppy(FloppyConfig(dirs=[str(tmp_path / "nope")]))
    with pytest.raises(BuildError, match="does not exist"):
        step.run(ctx, state)
    step.cleanup(state)

    mock_run.side_effect = subprocess.CalledProcessError(1, "mkfs.fat", stderr="invalid label\n")
    with pytest.raises(BuildError, match="error creating floppy: invalid label"):
        StepCreateFloppy(FloppyConfig(content={"a.txt": "x"})).run(ctx, state)


# -- remote upload --

def test_remote_upload(ctx, state, datastore):
    state.put(STATE_ISO_PATH, "/cache/a.iso")
    state.put(STATE_CD_PATH, "/tmp/cd/vsphere-builder-cd.iso")
    iso = IsoConfig(remote_cache_cleanup=True)
    iso.prepare()

    StepRemoteUpload(iso, location).run(ctx, state)

    assert state.get(STATE_ISO_REMOTE_PATH) == "[datastore1] vsphere_builder_cache/a.iso"
    assert state.get(STATE_CD_PATH) == "[datastore1] vsphere_builder_cache/vsphere-builder-cd.iso"
    assert len(state.get(STATE_UPLOADS)) == 2
    assert state.get(STATE_REMOTE_CACHE_CLEANUP) is True


def test_remote_upload_nothing_to_do(ctx, state, datastore):
    StepRemoteUpload(IsoConfig(), location).run(ctx, state)
    datastore.upload_file.assert_not_called()
    assert state.get(STATE_UPLOADS) == []


def uploads(state):
    state.put(
        STATE_UPLOADS,
        [
            UploadedObject("/cache/a.iso", "[datastore1] cache/a.iso", "datastore1", uploaded=True),
            UploadedObject("/cache/b.iso", "[datastore1] cache/b.iso", "datastore1", uploaded=False),
        ],
    )


def test_remote_upload_cleanup_on_failure(state, mock_driver):
    """Only files this run uploaded are removed after a failed build."""
    uploads(state)
    state.put(STATE_CANCELLED, True)

    StepRemoteUpload(IsoConfig(), location).cleanup(state)

    mock_driver.find_datastore.assert_called_once_with("datastore1")
    mock_driver.find_datastore.return_value.delete.assert_called_once_with("[datastore1] cache/a.iso")


def test_remote_upload_kept_after_success(state, mock_driver):
    uploads(state)

    StepRemoteUpload(IsoConfig(), location).cleanup(state)

    mock_driver.find_datastore.assert_not_called()


def test_remote_upload_cleanup_errors_are_logged(state, mock_driver):
    uploads(state)
    state.put(STATE_REMOTE_CACHE_CLEANUP, True)
    mock_driver.find_datastore.return_value.delete.side_effect = DriverError("locked")

    StepRemoteUpload(IsoConfig(), location).cleanup(state)
