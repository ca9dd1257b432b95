"""Shared fixtures for the host setup tests."""

import logging
import os
import pwd
import subprocess
from pathlib import Path

import pytest

from host_setup._common import log

ED25519_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIHomelabTestKeyOnly ansible@homelab"


class FakeRunner:
    """Records commands instead of executing them.

    `results` maps the first word of a command to the return code it should
    produce; `query_results` does the same for read-only queries.
    """

    def __init__(self, *, dry_run=False, results=None, query_results=None):
        self.dry_run = dry_run
        self.results = results or {}
        self.query_results = query_results or {}
        self.commands = []
        self.queries = []

    def run(self, cmd, *, check=True):
        self.commands.append(list(cmd))
        if self.dry_run:
            return 0
        code = self.results.get(cmd[0], 0)
        if check and code:
            raise subprocess.CalledProcessError(code, cmd)
        return code

    def query(self, cmd):
        self.queries.append(list(cmd))
        code, stdout = self.query_results.get(cmd[0], (0, ""))
        return subprocess.CompletedProcess(cmd, code, stdout=stdout, stderr="")


@pytest.fixture()
def fake_runner():
    return FakeRunner()


@pytest.fixture(autouse=True)
def _host_setup_logging():
    # main() installs its own handlers; route records back to caplog for every test
    log.handlers.clear()
    log.propagate = True
    log.setLevel(logging.DEBUG)
    yield


def make_passwd(name, home: Path, shell="/bin/bash"):
    return pwd.struct_passwd((name, "x", os.getuid(), os.getgid(), "", str(home), shell))
