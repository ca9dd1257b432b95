"""
Create and configure a dedicated Ansible automation user.

Run on a target host (as root) to prepare it for Ansible / Semaphore UI:
SSH public key login, passwordless sudo through /etc/sudoers.d, membership
in the distro's admin group (sudo on Debian/Ubuntu, wheel on RHEL/SUSE).
Safe to run repeatedly; a second run with the same input changes nothing.

Configuration comes from the environment, overlaid by an env file
(default: .env in the working directory):

    ANSIBLE_USER      username to create (default: ansible)
    ANSIBLE_SSH_KEY   SSH public key (required)
    ANSIBLE_SHELL     login shell (default: /bin/bash)
    ANSIBLE_SUDO      passwordless sudo (default: true)

Exit codes: 0 success, 1 general error, 2 missing/invalid configuration,
3 not root, 4 post-setup verification failed.
"""
from __future__ import annotations

import argparse
import grp
import os
import pwd
import re
import socket
import stat
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path

from dotenv import dotenv_values

from ._common import (
    ArgumentParser,
    ConfigError,
    Runner,
    SetupError,
    VerificationError,
    env_bool,
    log,
    require_root,
    setup_logging,
    success,
)

PROG = "ansible_user_setup"
VERSION = "2.0.0"

SSH_KEY_RE = re.compile(r"^ssh-(rsa|ed25519|ecdsa)")
SUDOERS_DIR = Path("/etc/sudoers.d")
ADMIN_GROUPS = ("sudo", "wheel")


@dataclass(frozen=True)
class UserSetupConfig:
    username: str
    ssh_key: str
    shell: str
    enable_sudo: bool


def load_env(env_file: Path, environ: dict[str, str] | None = None) -> dict[str, str]:
    """Process environment overlaid with the env file, like `source .env`."""
    values = dict(os.environ if environ is None else environ)
    if env_file.is_file():
        log.info(f"Loading configuration from: {env_file}")
        values.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
    else:
        log.warning(f"Environment file not found: {env_file}")
        log.info("Using environment variables or defaults")
    return values


def config_from_env(values: dict[str, str]) -> UserSetupConfig:
    return UserSetupConfig(
        username=values.get("ANSIBLE_USER") or "ansible",
        ssh_key=(values.get("ANSIBLE_SSH_KEY") or "").strip(),
        shell=values.get("ANSIBLE_SHELL") or "/bin/bash",
        enable_sudo=env_bool(values.get("ANSIBLE_SUDO"), default=True),
    )


def validate_config(cfg: UserSetupConfig) -> None:
    errors = []
    if not cfg.ssh_key:
        errors.append("ANSIBLE_SSH_KEY is required but not set")
    elif not SSH_KEY_RE.match(cfg.ssh_key):
        errors.append("ANSIBLE_SSH_KEY does not appear to be a valid SSH public key")

    if errors:
        for e in errors:
            log.error(e)
        raise ConfigError(f"Configuration validation failed with {len(errors)} error(s)")

    success("Configuration validated")


def _has_line(path: Path, line: str) -> bool:
    try:
        return line in path.read_text(encoding="utf-8").splitlines()
    except FileNotFoundError:
        return False


class UserSetup:
    def __init__(self, cfg: UserSetupConfig, runner: Runner, *, sudoers_dir: Path = SUDOERS_DIR) -> None:
        self.cfg = cfg
        self.runner = runner
        self.sudoers_dir = sudoers_dir

    @property
    def sudoers_file(self) -> Path:
        return self.sudoers_dir / self.cfg.username

    @property
    def sudoers_entry(self) -> str:
        return f"{self.cfg.username} ALL=(ALL) NOPASSWD:ALL\n"

    def _passwd(self) -> pwd.struct_passwd | None:
        try:
            return pwd.getpwnam(self.cfg.username)
        except KeyError:
            return None

    def _home(self) -> Path:
        entry = self._passwd()
        if entry is None:
            raise SetupError(f"User '{self.cfg.username}' not found")
        return Path(entry.pw_dir)

    def _visudo_check(self, path: Path) -> str | None:
        """None when valid, otherwise what visudo (or the failed launch) reported."""
        res = self.runner.query(["visudo", "-cf", str(path)])
        if res.returncode == 0:
            return None
        return (res.stderr or res.stdout).strip() or f"visudo exited with {res.returncode}"

    def create_user(self) -> None:
        username, shell = self.cfg.username, self.cfg.shell
        entry = self._passwd()
        if entry is not None:
            log.info(f"User '{username}' already exists")
            if entry.pw_shell != shell:
                self.runner.run(["usermod", "-s", shell, username])
                log.info(f"Updated shell to {shell}")
            return

        self.runner.run(["useradd", "-m", "-s", shell, username])
        success(f"Created user '{username}'")

    def configure_sudo_group(self) -> None:
        username = self.cfg.username
        for group in ADMIN_GROUPS:
            try:
                members = grp.getgrnam(group).gr_mem
            except KeyError:
                continue
            if username in members:
                log.info(f"'{username}' already in {group} group")
            else:
                self.runner.run(["usermod", "-aG", group, username])
                log.info(f"Added '{username}' to {group} group")
            return
        log.warning("Neither sudo nor wheel group found")

    def configure_sudoers(self) -> None:
        target = self.sudoers_file
        if target.is_file() and target.read_text(encoding="utf-8") == self.sudoers_entry:
            log.info(f"Sudoers already configured at {target}")
            return

        if not self.sudoers_dir.is_dir():
            raise SetupError(f"{self.sudoers_dir} does not exist; is sudo installed?")

        # sudo skips files in sudoers.d whose names contain a dot
        fd, tmp_name = tempfile.mkstemp(dir=self.sudoers_dir, prefix=f".{self.cfg.username}.")
        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(self.sudoers_entry)
            problem = self._visudo_check(tmp)
            if problem is not None:
                raise SetupError(f"Sudoers syntax validation failed: {problem}")
            os.chmod(tmp, 0o440)
            os.chown(tmp, 0, 0)
            os.replace(tmp, target)
        finally:
            tmp.unlink(missing_ok=True)

        success(f"Sudoers configured at {target}")

    def setup_ssh_keys(self) -> None:
        entry = self._passwd()
        if entry is None:
            raise SetupError(f"User '{self.cfg.username}' not found")

        ssh_dir = Path(entry.pw_dir) / ".ssh"
        auth_keys = ssh_dir / "authorized_keys"

        ssh_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(ssh_dir, 0o700)
        os.chown(ssh_dir, entry.pw_uid, entry.pw_gid)

        auth_keys.touch(exist_ok=True)
        os.chmod(auth_keys, 0o600)
        os.chown(auth_keys, entry.pw_uid, entry.pw_gid)

        if _has_line(auth_keys, self.cfg.ssh_key):
            log.info(f"SSH key already present in {auth_keys}")
            return

        existing = auth_keys.read_text(encoding="utf-8")
        with auth_keys.open("a", encoding="utf-8") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write(self.cfg.ssh_key + "\n")
        success(f"SSH key added to {auth_keys}")

    def apply(self) -> None:
        log.info("Starting Ansible user setup...")
        self.create_user()
        if self.cfg.enable_sudo:
            self.configure_sudo_group()
            self.configure_sudoers()
        self.setup_ssh_keys()

    def verify(self) -> None:
        log.info("Verifying setup...")
        errors = 0
        username = self.cfg.username

        if self._passwd() is not None:
            success(f"User '{username}' exists")
            ssh_dir = self._home() / ".ssh"
        else:
            log.error(f"User '{username}' not found")
            errors += 1
            ssh_dir = None

        if ssh_dir is not None and _has_line(ssh_dir / "authorized_keys", self.cfg.ssh_key):
            success("SSH key present in authorized_keys")
        else:
            log.error("SSH key not found in authorized_keys")
            errors += 1

        if self.cfg.enable_sudo:
            if self.sudoers_file.is_file() and self._visudo_check(self.sudoers_file) is None:
                success("Sudoers file valid")
            else:
                log.error("Sudoers file missing or invalid")
                errors += 1

        if ssh_dir is not None and ssh_dir.is_dir() and stat.S_IMODE(ssh_dir.stat().st_mode) == 0o700:
            success("SSH directory permissions correct (700)")
        else:
            log.error("SSH directory permissions incorrect")
            errors += 1

        if errors:
            raise VerificationError(f"Verification failed with {errors} error(s)")
        success("All verifications passed")


def _primary_address(runner: Runner) -> str:
    res = runner.query(["hostname", "-I"])
    addresses = res.stdout.split() if res.returncode == 0 else []
    return addresses[0] if addresses else socket.gethostname()


def build_parser() -> argparse.ArgumentParser:
    parser = ArgumentParser(
        prog=PROG,
        description="Creates and configures an Ansible automation user.",
        epilog="Examples:\n"
        "  sudo homelab-ansible-user\n"
        "  sudo homelab-ansible-user /etc/ansible/ansible.env\n"
        "  ANSIBLE_USER=deploy sudo -E homelab-ansible-user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("env_file", nargs="?", default=".env", help="Path to environment file (default: ./.env)")
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s version {VERSION}")
    parser.add_argument("-d", "--dry-run", action="store_true", help="Show what would be done without making changes")
    parser.add_argument("-q", "--quiet", action="store_true", help="Suppress non-error output")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(PROG, quiet=args.quiet)

    try:
        require_root()
        cfg = config_from_env(load_env(Path(args.env_file).expanduser()))
        validate_config(cfg)

        log.info("Configuration:")
        log.info(f"  Username: {cfg.username}")
        log.info(f"  Shell: {cfg.shell}")
        log.info(f"  Sudo: {str(cfg.enable_sudo).lower()}")
        log.info(f"  SSH Key: {cfg.ssh_key[:50]}...")

        if args.dry_run:
            log.warning("Dry run mode - no changes will be made")
            return 0

        runner = Runner()
        setup = UserSetup(cfg, runner, sudoers_dir=SUDOERS_DIR)
        setup.apply()
        setup.verify()
    except SetupError as e:
        log.error(str(e))
        return e.exit_code
    except subprocess.CalledProcessError as e:
        log.error(f"Command failed with exit code {e.returncode}: {' '.join(map(str, e.cmd))}")
        return 1
    except OSError as e:
        log.error(str(e))
        return 1

    success("Ansible user setup completed successfully!")
    log.info(f"Test with: ssh {cfg.username}@{_primary_address(runner)}")
    return 0


def cli() -> None:
    raise SystemExit(main())


if __name__ == "__main__":
    cli()
