"""
Prepare a Proxmox VE host for Fedora CoreOS VMs.

1. create a storage directory with images/ and snippets/
2. register it as a `dir` storage with pvesm
3. download the latest proxmoxve qcow2 for the chosen stream

The image download walks a fallback chain and stops at the first success:
coreos-installer binary, coreos-installer container via podman, via docker,
then a direct HTTPS download with local xz decompression.

Environment:
    STORAGE_NAME          storage id in Proxmox (default: coreos)
    STORAGE_PATH          directory on the host (default: /var/coreos)
    FCOS_STREAM           stable / testing / next (default: stable)
    SKIP_IMAGE_DOWNLOAD   skip step 3 (default: false)

Based on https://docs.fedoraproject.org/en-US/fedora-coreos/provisioning-proxmoxve/
"""
from __future__ import annotations

import argparse
import lzma
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import httpx

from pve_homelab.constants import (
    COREOS_INSTALLER_IMAGE,
    FCOS_BUILD_URL,
    FCOS_DOWNLOAD_PAGE,
    FCOS_STREAM_METADATA_URL,
)

from ._common import ArgumentParser, SetupError, Runner, dry_run_note, env_bool, have, log, require_root, setup_logging, success

PROG = "fcos_storage_setup"

ARCH = "x86_64"
PLATFORM = "proxmoxve"
IMAGE_FORMAT = "qcow2.xz"
IMAGE_GLOB = f"fedora-coreos-*-{PLATFORM}.{ARCH}.qcow2"
STORAGE_CONTENT = "images,snippets"
HTTP_TIMEOUT = httpx.Timeout(30.0, read=300.0)


@dataclass(frozen=True)
class StorageConfig:
    storage_name: str = "coreos"
    storage_path: Path = Path("/var/coreos")
    stream: str = "stable"
    skip_download: bool = False

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "StorageConfig":
        env = os.environ if environ is None else environ
        return cls(
            storage_name=env.get("STORAGE_NAME") or "coreos",
            storage_path=Path(env.get("STORAGE_PATH") or "/var/coreos"),
            stream=env.get("FCOS_STREAM") or "stable",
            skip_download=env_bool(env.get("SKIP_IMAGE_DOWNLOAD")),
        )

    @property
    def images_dir(self) -> Path:
        return self.storage_path / "images"

    @property
    def snippets_dir(self) -> Path:
        return self.storage_path / "snippets"


def installer_command(stream: str, dest: Path) -> list[str]:
    return [
        "coreos-installer", "download",
        "-s", stream, "-p", PLATFORM, "-f", IMAGE_FORMAT,
        "--decompress", "-C", str(dest),
    ]


def container_command(engine: str, stream: str, dest: Path) -> list[str]:
    return [
        engine, "run", "--pull=always", "--rm",
        "-v", f"{dest}:/data", "-w", "/data",
        COREOS_INSTALLER_IMAGE,
        "download", "-s", stream, "-p", PLATFORM, "-f", IMAGE_FORMAT, "--decompress",
    ]


def latest_release(client: httpx.Client, stream: str) -> str:
    log.info(f"Fetching latest FCOS version for stream: {stream}...")
    resp = client.get(FCOS_STREAM_METADATA_URL.format(stream=stream))
    resp.raise_for_status()
    artifacts = resp.json().get("architectures", {}).get(ARCH, {}).get("artifacts", {})
    # every platform of a stream build shares one release id
    for platform in (PLATFORM, "metal"):
        release = artifacts.get(platform, {}).get("release")
        if release:
            return release
    raise SetupError(f"No {ARCH} release found in stream metadata for {stream!r}")


def image_url(stream: str, version: str) -> str:
    base = FCOS_BUILD_URL.format(stream=stream, version=version, arch=ARCH)
    return f"{base}/fedora-coreos-{version}-{PLATFORM}.{ARCH}.{IMAGE_FORMAT}"


def download_and_extract(client: httpx.Client, url: str, dest_dir: Path) -> Path:
    """Download url into dest_dir; .xz files are decompressed and removed like unxz does."""
    filename = url.rsplit("/", 1)[-1]
    output = dest_dir / filename
    log.info(f"Downloading: {filename}")

    try:
        with client.stream("GET", url) as resp:
            resp.raise_for_status()
            with output.open("wb") as f:
                for chunk in resp.iter_bytes():
                    f.write(chunk)
    except (httpx.HTTPError, OSError):
        output.unlink(missing_ok=True)
        raise

    if not filename.endswith(".xz"):
        return output

    log.info(f"Decompressing: {filename}")
    extracted = output.with_suffix("")
    try:
        with lzma.open(output, "rb") as src, extracted.open("wb") as dst:
            shutil.copyfileobj(src, dst)
    except (lzma.LZMAError, OSError):
        extracted.unlink(missing_ok=True)
        output.unlink(missing_ok=True)
        raise
    output.unlink()
    success(f"Extracted: {extracted.name}")
    return extracted


@dataclass(frozen=True)
class DownloadMethod:
    name: str
    # executables whose presence enables the method; empty means always available
    requires: tuple[str, ...]
    fetch: Callable[["StorageSetup"], bool]

    def available(self) -> bool:
        return all(have(cmd) for cmd in self.requires)


def _via_installer(setup: "StorageSetup") -> bool:
    log.info("Using coreos-installer binary")
    return setup.runner.run(installer_command(setup.cfg.stream, setup.cfg.images_dir), check=False) == 0


def _via_container(engine: str) -> Callable[["StorageSetup"], bool]:
    def fetch(setup: "StorageSetup") -> bool:
        log.info(f"Using coreos-installer via {engine}")
        cmd = container_command(engine, setup.cfg.stream, setup.cfg.images_dir)
        return setup.runner.run(cmd, check=False) == 0

    return fetch


def _via_direct_download(setup: "StorageSetup") -> bool:
    log.info("Attempting direct download over HTTPS...")
    stream = setup.cfg.stream
    try:
        version = latest_release(setup.client, stream)
        log.info(f"Latest version: {version}")
        url = image_url(stream, version)
        log.info(f"Download URL: {url}")
        download_and_extract(setup.client, url, setup.cfg.images_dir)
    except (httpx.HTTPError, lzma.LZMAError, OSError, ValueError, SetupError) as e:
        log.error(f"Direct download failed: {e}")
        return False
    return True


DOWNLOAD_METHODS = (
    DownloadMethod("coreos-installer", ("coreos-installer",), _via_installer),
    DownloadMethod("podman", ("podman",), _via_container("podman")),
    DownloadMethod("docker", ("docker",), _via_container("docker")),
    DownloadMethod("direct", (), _via_direct_download),
)


class StorageSetup:
    def __init__(
        self,
        cfg: StorageConfig,
        runner: Runner,
        *,
        client: httpx.Client | None = None,
        methods: tuple[DownloadMethod, ...] = DOWNLOAD_METHODS,
    ) -> None:
        self.cfg = cfg
        self.runner = runner
        self.methods = methods
        self._client = client
        self._owns_client = client is None

    @property
    def dry_run(self) -> bool:
        return self.runner.dry_run

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(follow_redirects=True, timeout=HTTP_TIMEOUT)
        return self._client

    def close(self) -> None:
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None

    def create_storage_directory(self) -> None:
        log.info("Creating Fedora CoreOS storage directory structure...")
        dirs = (self.cfg.storage_path, self.cfg.images_dir, self.cfg.snippets_dir)

        if self.dry_run:
            dry_run_note(f"Would create: {self.cfg.storage_path}/{{images,snippets}}")
            dry_run_note(f"Would set permissions: chmod 755 on {self.cfg.storage_path} and subdirectories")
            return

        for d in dirs:
            d.mkdir(parents=True, exist_ok=True)
        if not all(d.is_dir() for d in dirs):
            raise SetupError("Failed to create storage directory structure")
        success(f"Storage directory structure ready: {self.cfg.storage_path}/{{images,snippets}}")

        for d in dirs:
            os.chmod(d, 0o755)
        log.info("Permissions set: 755 on all directories")

    def storage_status(self) -> list[str]:
        """pvesm status lines for our storage id (read-only, also in dry-run)."""
        res = self.runner.query(["pvesm", "status"])
        if res.returncode != 0:
            raise SetupError(f"pvesm status failed: {res.stderr.strip()}")
        return [line for line in res.stdout.splitlines() if line.split()[:1] == [self.cfg.storage_name]]

    def register_storage(self) -> None:
        log.info("Registering storage in Proxmox VE...")
        name = self.cfg.storage_name

        existing = self.storage_status()
        if existing:
            log.warning(f"Storage '{name}' already registered in Proxmox")
            log.info("Current configuration:")
            for line in existing:
                log.info(f"  {line}")
            return

        self.runner.run(
            ["pvesm", "add", "dir", name, "--path", str(self.cfg.storage_path), "--content", STORAGE_CONTENT]
        )
        if self.dry_run:
            return

        success(f"Storage '{name}' registered successfully")
        for line in self.storage_status():
            log.info(f"  {line}")

    def existing_images(self) -> list[Path]:
        if not self.cfg.images_dir.is_dir():
            return []
        return sorted(self.cfg.images_dir.glob(IMAGE_GLOB))

    def _list_images(self) -> None:
        log.info(f"Images in {self.cfg.images_dir}:")
        for p in sorted(self.cfg.images_dir.iterdir()):
            log.info(f"  {p.name} ({p.stat().st_size / 2**30:.1f} GiB)")

    def download_image(self) -> None:
        if self.cfg.skip_download:
            log.info("Skipping Fedora CoreOS image download (SKIP_IMAGE_DOWNLOAD=true)")
            return

        log.info(f"Downloading Fedora CoreOS image (stream: {self.cfg.stream})...")

        if self.existing_images():
            log.warning(f"Fedora CoreOS image already exists in {self.cfg.images_dir}/")
            self._list_images()
            log.info("To re-download, delete existing images or set SKIP_IMAGE_DOWNLOAD=true")
            return

        if self.dry_run:
            dry_run_note(f"Would download FCOS image to {self.cfg.images_dir}/")
            return

        for method in self.methods:
            if not method.available():
                log.debug(f"Download method {method.name} unavailable")
                continue
            if method.fetch(self):
                success("Fedora CoreOS image downloaded successfully")
                self._list_images()
                return
            log.warning(f"Download via {method.name} failed, trying next method")

        stream = self.cfg.stream
        log.info("Manual download instructions:")
        log.info(f"  1. Visit: {FCOS_DOWNLOAD_PAGE.format(stream=stream)}")
        log.info(f"  2. Download: Proxmox ({PLATFORM}) - QCOW2 (Compressed)")
        log.info(f"  3. Extract: unxz fedora-coreos-*-{PLATFORM}.{ARCH}.{IMAGE_FORMAT}")
        log.info(f"  4. Move to: {self.cfg.images_dir}/")
        raise SetupError("Failed to download FCOS image")

    def run(self) -> None:
        try:
            self.create_storage_directory()
            self.register_storage()
            self.download_image()
        finally:
            self.close()


def print_summary(cfg: StorageConfig) -> None:
    rule = "=" * 72
    print()
    print(rule)
    print("  Fedora CoreOS Storage Setup Complete")
    print(rule)
    print(f"  Storage Name: {cfg.storage_name}")
    print(f"  Storage Path: {cfg.storage_path}")
    print(f"  Stream:       {cfg.stream}")
    print(rule)
    print()
    print("Next steps:")
    print("  1. Set fcos.imageFileId in the Pulumi stack config and deploy:")
    print("     pulumi up")
    print()
    print("  2. Pulumi will:")
    print("     - Transpile the Butane template to Ignition")
    print("     - Create the VM with Ignition passed through fw_cfg")
    print("     - Start the VM (Ignition applies on first boot)")
    print()
    print("  3. Access VM after boot:")
    print("     ssh core@<vm-ip-address>")
    print(rule)


def build_parser() -> argparse.ArgumentParser:
    parser = ArgumentParser(
        prog=PROG,
        description="Proxmox VE - Fedora CoreOS storage setup.",
        epilog="Environment: STORAGE_NAME (coreos), STORAGE_PATH (/var/coreos), "
        "FCOS_STREAM (stable), SKIP_IMAGE_DOWNLOAD (false).",
    )
    parser.add_argument("-n", "--dry-run", action="store_true", help="Preview changes without making them")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(PROG)

    cfg = StorageConfig.from_env()
    if args.dry_run:
        log.warning("DRY-RUN MODE: No changes will be made")
    log.info("Starting Proxmox VE Fedora CoreOS storage setup...")

    try:
        require_root()
        if not have("pvesm"):
            raise SetupError("pvesm command not found. Is this a Proxmox VE host?")
        StorageSetup(cfg, Runner(dry_run=args.dry_run)).run()
    except SetupError as e:
        log.error(str(e))
        return 1
    except subprocess.CalledProcessError as e:
        log.error(f"Command failed with exit code {e.returncode}: {' '.join(map(str, e.cmd))}")
        return 1
    except OSError as e:
        log.error(str(e))
        return 1

    print_summary(cfg)
    if args.dry_run:
        log.warning("DRY-RUN MODE: No actual changes were made")
    else:
        success("Setup completed successfully!")
    return 0


def cli() -> None:
    raise SystemExit(main())


if __name__ == "__main__":
    cli()
