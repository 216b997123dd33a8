"""
Shared pytest fixtures for bfrg tests.

This module provides fixtures for:
- Run configuration built around temporary directories
- A fake Toolbox and a recording command runner in place of real binaries
- Run context, guarded executor and working set
- Mock fixtures for external services (S3, SSH)
- Source trees for the archive pipeline
"""

import os
import subprocess
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from bfrg.config import RunConfig
from bfrg.models import WorkingSet
from bfrg.utils.tools import Toolbox
from bfrg.backup.guard import GuardedExec, RunContext
from bfrg.backup.compression import ArchivePipeline


EPOCH = 1700000000


class FakeToolbox(Toolbox):
    """Toolbox that only knows the commands it was given."""

    def __init__(self, available=()):
        super().__init__()
        self.commands = set(available)

    def locate(self, cmd):
        return f'/usr/bin/{cmd}' if cmd in self.commands else None


class FakeRunner:
    """
    subprocess.run replacement recording every command.

    ``failures`` maps a command name to the exit status it returns; every
    other command succeeds.
    """

    def __init__(self, failures=None):
        self.failures = dict(failures or {})
        self.calls = []

    def __call__(self, cmd, cwd=None, **kwargs):
        self.calls.append(list(cmd))
        status = self.failures.get(cmd[0], 0)
        return subprocess.CompletedProcess(cmd, status, stdout='', stderr='boom' if status else '')

    def commands(self, name):
        return [call for call in self.calls if call[0] == name]


class CopyCipherPipeline(ArchivePipeline):
    """Pipeline whose cipher is a plain copy, so no key material is needed."""

    def encrypt_command(self, source, output):
        return ['cp', source, output]


@pytest.fixture
def source_tree(tmp_path):
    """
    Create a source directory.

    Creates:
    - docs/readme.txt
    - docs/nested/data.bin
    - notes.txt~ (excluded by pattern)
    - .cache/blob (excluded by pattern)
    """
    source = tmp_path / 'source'
    (source / 'docs' / 'nested').mkdir(parents=True)
    (source / 'docs' / 'readme.txt').write_text('read me')
    (source / 'docs' / 'nested' / 'data.bin').write_bytes(bytes(range(256)) * 4)
    (source / 'notes.txt~').write_text('editor backup')
    (source / '.cache').mkdir()
    (source / '.cache' / 'blob').write_text('cached')
    return source


@pytest.fixture
def make_config(tmp_path, source_tree):
    """
    Factory for RunConfig snapshots rooted in tmp_path.

    Defaults to an unattended run with one local target, no recovery data
    and no self-replication.
    """
    safe_tmp = tmp_path / 'safe_tmp'
    safe_tmp.mkdir()
    local_target = tmp_path / 'target'
    local_target.mkdir()

    def factory(**overrides):
        values = dict(
            source_paths=(str(source_tree),),
            local_targets=(str(local_target),),
            exclude_list=('*~', '.cache'),
            compressor_cmd='gzip',
            compressor_opt='',
            safe_tmp=str(safe_tmp),
            safe_delete=False,
            self_replicate=False,
            data_redundancy=0,
            non_interactive=True,
            abort_on_error=False,
            verbose=False,
        )
        values.update(overrides)
        return RunConfig(**values)

    return factory


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def context(make_config):
    return RunContext(make_config(), EPOCH)


@pytest.fixture
def guard(context, fake_runner):
    return GuardedExec(context, runner=fake_runner)


@pytest.fixture
def working_set(tmp_path):
    """
    Working set with a finished artifact and one recovery file.
    """
    root = tmp_path / 'ws'
    ws = WorkingSet(root=str(root), epoch=EPOCH, archive_name=f'keys_{EPOCH}.tar.gz')
    os.makedirs(ws.working_dir)
    with open(ws.artifact_path, 'wb') as f:
        f.write(b'encrypted payload' * 64)
    with open(ws.artifact_path + '.par2', 'wb') as f:
        f.write(b'recovery')
    return ws


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake credentials so boto3 never reaches a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def mock_s3(aws_credentials):
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.client('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('bfrg.backup.storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_sftp.stat.side_effect = FileNotFoundError()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh
