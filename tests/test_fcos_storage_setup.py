"""Tests for the Fedora CoreOS storage setup CLI."""

import lzma
import os
import stat
import subprocess

import httpx
import pytest

from host_setup import fcos_storage_setup as fcs
from host_setup._common import Runner, SetupError

from conftest import FakeRunner

RELEASE = "42.20250803.3.0"
METADATA = {
    "stream": "stable",
    "architectures": {
        "x86_64": {
            "artifacts": {
                "metal": {"release": RELEASE},
                "proxmoxve": {"release": RELEASE},
            }
        }
    },
}
PVESM_HEADER = "Name             Type     Status           Total            Used       Available        %\n"
PVESM_WITH_COREOS = PVESM_HEADER + "coreos            dir     active       98559220        10437512        83072160   10.59%\n"


def mock_client(*, fail=False):
    def handler(request: httpx.Request) -> httpx.Response:
        if fail:
            return httpx.Response(503)
        if request.url.path == "/streams/stable.json":
            return httpx.Response(200, json=METADATA)
        if request.url.path.endswith(f"fedora-coreos-{RELEASE}-proxmoxve.x86_64.qcow2.xz"):
            return httpx.Response(200, content=lzma.compress(b"qcow2 disk image"))
        return httpx.Response(404)

    return httpx.Client(transport=httpx.MockTransport(handler))


@pytest.fixture()
def cfg(tmp_path):
    return fcs.StorageConfig(storage_path=tmp_path / "coreos")


@pytest.fixture()
def prepared(cfg):
    cfg.images_dir.mkdir(parents=True)
    cfg.snippets_dir.mkdir()
    return cfg


def tools(monkeypatch, available):
    monkeypatch.setattr(fcs, "have", lambda name: name in available)


class TestConfig:
    def test_defaults(self):
        cfg = fcs.StorageConfig.from_env({})
        assert cfg.storage_name == "coreos"
        assert str(cfg.storage_path) == "/var/coreos"
        assert cfg.stream == "stable"
        assert cfg.skip_download is False

    def test_overrides(self):
        cfg = fcs.StorageConfig.from_env(
            {"STORAGE_NAME": "fcos", "STORAGE_PATH": "/srv/fcos", "FCOS_STREAM": "testing", "SKIP_IMAGE_DOWNLOAD": "true"}
        )
        assert cfg.storage_name == "fcos"
        assert str(cfg.images_dir) == "/srv/fcos/images"
        assert cfg.stream == "testing"
        assert cfg.skip_download is True


class TestCommands:
    def test_installer_command(self, cfg):
        cmd = fcs.installer_command("stable", cfg.images_dir)
        assert cmd == [
            "coreos-installer", "download", "-s", "stable", "-p", "proxmoxve",
            "-f", "qcow2.xz", "--decompress", "-C", str(cfg.images_dir),
        ]

    def test_container_command(self, cfg):
        cmd = fcs.container_command("podman", "next", cfg.images_dir)
        assert cmd[:4] == ["podman", "run", "--pull=always", "--rm"]
        assert f"{cfg.images_dir}:/data" in cmd
        assert "quay.io/coreos/coreos-installer:release" in cmd
        assert cmd[-8:] == ["download", "-s", "next", "-p", "proxmoxve", "-f", "qcow2.xz", "--decompress"]

    def test_image_url(self):
        assert fcs.image_url("stable", RELEASE) == (
            "https://builds.coreos.fedoraproject.org/prod/streams/stable/builds/"
            f"{RELEASE}/x86_64/fedora-coreos-{RELEASE}-proxmoxve.x86_64.qcow2.xz"
        )


class TestStorage:
    def test_directories_created(self, cfg):
        setup = fcs.StorageSetup(cfg, FakeRunner())
        setup.create_storage_directory()
        for d in (cfg.storage_path, cfg.images_dir, cfg.snippets_dir):
            assert d.is_dir()
            assert stat.S_IMODE(d.stat().st_mode) == 0o755

    def test_storage_registered(self, cfg):
        runner = FakeRunner(query_results={"pvesm": (0, PVESM_HEADER)})
        fcs.StorageSetup(cfg, runner).register_storage()
        assert runner.commands == [
            ["pvesm", "add", "dir", "coreos", "--path", str(cfg.storage_path), "--content", "images,snippets"]
        ]

    def test_existing_storage_left_alone(self, cfg):
        runner = FakeRunner(query_results={"pvesm": (0, PVESM_WITH_COREOS)})
        fcs.StorageSetup(cfg, runner).register_storage()
        assert runner.commands == []

    def test_storage_name_must_match_whole_column(self, tmp_path):
        cfg = fcs.StorageConfig(storage_name="core", storage_path=tmp_path)
        runner = FakeRunner(query_results={"pvesm": (0, PVESM_WITH_COREOS)})
        fcs.StorageSetup(cfg, runner).register_storage()
        assert runner.commands[0][:4] == ["pvesm", "add", "dir", "core"]

    def test_pvesm_status_failure(self, cfg):
        runner = FakeRunner(query_results={"pvesm": (255, "")})
        with pytest.raises(SetupError, match="pvesm status failed"):
            fcs.StorageSetup(cfg, runner).register_storage()


class TestDownloadChain:
    def test_first_method_wins(self, prepared, monkeypatch):
        tools(monkeypatch, {"coreos-installer", "podman", "docker"})
        runner = FakeRunner()
        fcs.StorageSetup(prepared, runner, client=mock_client(fail=True)).download_image()
        assert [c[0] for c in runner.commands] == ["coreos-installer"]

    def test_order_and_halt(self, prepared, monkeypatch):
        tools(monkeypatch, {"coreos-installer", "podman", "docker"})
        runner = FakeRunner(results={"coreos-installer": 1, "podman": 1, "docker": 0})
        fcs.StorageSetup(prepared, runner, client=mock_client(fail=True)).download_image()
        assert [c[0] for c in runner.commands] == ["coreos-installer", "podman", "docker"]

    def test_missing_tools_are_skipped(self, prepared, monkeypatch):
        tools(monkeypatch, {"docker"})
        runner = FakeRunner()
        fcs.StorageSetup(prepared, runner, client=mock_client(fail=True)).download_image()
        assert [c[0] for c in runner.commands] == ["docker"]

    def test_direct_download_last(self, prepared, monkeypatch):
        tools(monkeypatch, {"coreos-installer", "podman", "docker"})
        runner = FakeRunner(results={"coreos-installer": 1, "podman": 125, "docker": 1})
        setup = fcs.StorageSetup(prepared, runner, client=mock_client())
        setup.download_image()

        assert [c[0] for c in runner.commands] == ["coreos-installer", "podman", "docker"]
        image = prepared.images_dir / f"fedora-coreos-{RELEASE}-proxmoxve.x86_64.qcow2"
        assert image.read_bytes() == b"qcow2 disk image"
        assert not image.with_suffix(".qcow2.xz").exists()
        assert setup.existing_images() == [image]

    def test_everything_fails(self, prepared, monkeypatch, caplog):
        tools(monkeypatch, set())
        with pytest.raises(SetupError, match="Failed to download FCOS image"):
            fcs.StorageSetup(prepared, FakeRunner(), client=mock_client(fail=True)).download_image()
        assert "Manual download instructions" in caplog.text

    def test_existing_image_skips_download(self, prepared, monkeypatch):
        (prepared.images_dir / f"fedora-coreos-{RELEASE}-proxmoxve.x86_64.qcow2").write_bytes(b"x")
        tools(monkeypatch, {"coreos-installer"})
        runner = FakeRunner()
        fcs.StorageSetup(prepared, runner).download_image()
        assert runner.commands == []

    def test_skip_download(self, tmp_path, monkeypatch):
        cfg = fcs.StorageConfig(storage_path=tmp_path, skip_download=True)
        tools(monkeypatch, {"coreos-installer"})
        runner = FakeRunner()
        fcs.StorageSetup(cfg, runner).download_image()
        assert runner.commands == []


class TestDirectDownload:
    def test_latest_release(self):
        assert fcs.latest_release(mock_client(), "stable") == RELEASE

    def test_latest_release_falls_back_to_metal(self):
        metadata = {"architectures": {"x86_64": {"artifacts": {"metal": {"release": "41.1"}}}}}
        client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200, json=metadata)))
        assert fcs.latest_release(client, "stable") == "41.1"

    def test_latest_release_missing(self):
        client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))
        with pytest.raises(SetupError, match="No x86_64 release"):
            fcs.latest_release(client, "stable")

    def test_corrupt_archive_removed(self, tmp_path):
        client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200, content=b"not xz")))
        with pytest.raises(lzma.LZMAError):
            fcs.download_and_extract(client, "https://example.invalid/img.qcow2.xz", tmp_path)
        assert list(tmp_path.iterdir()) == []

    def test_interrupted_download_removed(self, tmp_path):
        class Interrupted(httpx.SyncByteStream):
            def __iter__(self):
                yield b"partial"
                raise httpx.ReadError("connection reset")

        client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200, stream=Interrupted())))
        with pytest.raises(httpx.ReadError):
            fcs.download_and_extract(client, "https://example.invalid/img.qcow2.xz", tmp_path)
        assert list(tmp_path.iterdir()) == []

    def test_disk_error_falls_through(self, prepared, monkeypatch):
        def disk_full(client, url, dest_dir):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(fcs, "download_and_extract", disk_full)
        setup = fcs.StorageSetup(prepared, FakeRunner(), client=mock_client())
        assert fcs._via_direct_download(setup) is False

    def test_owned_client_closed_after_run(self, cfg):
        setup = fcs.StorageSetup(cfg, FakeRunner(dry_run=True))
        client = setup.client
        setup.run()
        assert client.is_closed

    def test_injected_client_left_open(self, cfg):
        client = mock_client()
        fcs.StorageSetup(cfg, FakeRunner(dry_run=True), client=client).run()
        assert not client.is_closed


class TestDryRun:
    @pytest.fixture()
    def calls(self, monkeypatch):
        calls = []

        def fake_run(cmd, **kwargs):
            calls.append(list(cmd))
            return subprocess.CompletedProcess(cmd, 0, stdout=PVESM_HEADER, stderr="")

        monkeypatch.setattr(subprocess, "run", fake_run)
        return calls

    def test_no_mutations(self, cfg, calls, monkeypatch):
        tools(monkeypatch, {"coreos-installer", "podman", "docker"})
        fcs.StorageSetup(cfg, Runner(dry_run=True), client=mock_client(fail=True)).run()
        assert not cfg.storage_path.exists()
        assert calls == [["pvesm", "status"]]

    def test_main_dry_run(self, tmp_path, calls, monkeypatch, capsys):
        monkeypatch.setattr(os, "geteuid", lambda: 0)
        monkeypatch.setenv("STORAGE_PATH", str(tmp_path / "coreos"))
        tools(monkeypatch, {"pvesm"})
        assert fcs.main(["--dry-run"]) == 0
        assert not (tmp_path / "coreos").exists()
        assert calls == [["pvesm", "status"]]
        out = capsys.readouterr().out
        assert "Would execute: pvesm add dir coreos" in out
        assert "Fedora CoreOS Storage Setup Complete" in out


class TestMain:
    def test_not_root(self, monkeypatch):
        monkeypatch.setattr(os, "geteuid", lambda: 1000)
        assert fcs.main([]) == 1

    def test_not_proxmox(self, monkeypatch):
        monkeypatch.setattr(os, "geteuid", lambda: 0)
        tools(monkeypatch, set())
        assert fcs.main([]) == 1

    def test_unknown_option(self):
        with pytest.raises(SystemExit) as e:
            fcs.main(["--bogus"])
        assert e.value.code == 1

    def test_os_error_reported(self, monkeypatch, capsys):
        monkeypatch.setattr(os, "geteuid", lambda: 0)
        tools(monkeypatch, {"pvesm"})

        def denied(self):
            raise PermissionError(13, "Permission denied", "/var/coreos")

        monkeypatch.setattr(fcs.StorageSetup, "run", denied)
        assert fcs.main([]) == 1
        assert "Permission denied" in capsys.readouterr().err
