"""
Unit tests for the archive pipeline (bfrg/backup/compression.py) and the
recovery data stage (bfrg/backup/redundancy.py).
"""

import os
import sys
import shutil
import tarfile
import zipfile

import pytest

from bfrg.errors import BackupAborted, FatalError
from bfrg.models import WorkingSet
from bfrg.backup.guard import GuardedExec, RunContext
from bfrg.backup.sources import SourceError
from bfrg.backup.redundancy import RedundancyStage
from bfrg.backup.compression import (
    ArchivePipeline,
    CompressionError,
    generate_archive_filename,
    compressor_for_archive,
    get_archive_size,
)

from conftest import CopyCipherPipeline, FakeRunner, FakeToolbox, EPOCH


requires_tar_gzip = pytest.mark.skipif(
    shutil.which('tar') is None or shutil.which('gzip') is None,
    reason='tar and gzip are required'
)


@pytest.fixture
def build_ws(tmp_path):
    ws = WorkingSet(root=str(tmp_path / 'ws'), epoch=EPOCH, archive_name=f'keys_{EPOCH}.tar.gz')
    os.makedirs(ws.working_dir)
    return ws


class TestArchiveFilename:
    """Test generate_archive_filename function."""

    @pytest.mark.parametrize("compressor,expected", [
        ("xz", f"keys_{EPOCH}.tar.xz"),
        ("gzip", f"keys_{EPOCH}.tar.gz"),
        ("pigz", f"keys_{EPOCH}.tar.gz"),
        ("bzip2", f"keys_{EPOCH}.tar.bz2"),
        ("zstd", f"keys_{EPOCH}.tar.zst"),
    ])
    def test_extension_follows_compressor(self, compressor, expected):
        assert generate_archive_filename('keys', compressor, EPOCH) == expected

    def test_prefix_is_sanitized(self):
        """Test that spaces and special characters are replaced."""
        filename = generate_archive_filename('my keys/2024', 'xz', EPOCH)

        assert filename == f"my_keys_2024_{EPOCH}.tar.xz"

    def test_invalid_compressor(self):
        with pytest.raises(ValueError, match="Invalid compressor"):
            generate_archive_filename('keys', 'rar', EPOCH)

    @pytest.mark.parametrize("filename,expected", [
        (f"keys_{EPOCH}.tar.xz.gpg", "xz"),
        (f"keys_{EPOCH}.tar.gz.gpg", "gzip"),
        (f"keys_{EPOCH}.tar.bz2", "bzip2"),
        ("notes.txt.gpg", None),
    ])
    def test_compressor_for_archive(self, filename, expected):
        assert compressor_for_archive(filename) == expected

    def test_archive_size_missing_file(self, tmp_path):
        with pytest.raises(CompressionError, match="Archive not found"):
            get_archive_size(str(tmp_path / 'missing.gpg'))


class TestCommands:
    """Test the command lines handed to the external tools."""

    def test_container_commands(self, make_config, guard, build_ws):
        config = make_config(compressor_cmd='xz', compressor_opt='-q -9e --threads=0')
        pipeline = ArchivePipeline(config, guard, FakeToolbox())

        tar_cmd, compressor_cmd = pipeline.container_commands(['/data'], build_ws)

        assert tar_cmd == [
            'tar', f'--exclude-from={build_ws.exclude_file}', '--exclude-caches', '-cf', '-', '/data'
        ]
        assert compressor_cmd == ['xz', '-q', '-9e', '--threads=0']

    def test_encrypt_command(self, make_config, guard):
        pipeline = ArchivePipeline(make_config(s2k_count=1024), guard, FakeToolbox())

        cmd = pipeline.encrypt_command('/tmp/in', '/tmp/out.gpg')

        assert cmd[:3] == ['gpg', '-q', '--symmetric']
        assert cmd[cmd.index('--cipher-algo') + 1] == 'AES256'
        assert cmd[cmd.index('--s2k-count') + 1] == '1024'
        assert cmd[-3:] == ['--output', '/tmp/out.gpg', '/tmp/in']
        assert '--batch' not in cmd

    def test_encrypt_command_with_passphrase_file(self, make_config, guard):
        pipeline = ArchivePipeline(make_config(passphrase_file='/etc/bfrg.pass'), guard, FakeToolbox())

        cmd = pipeline.encrypt_command('/tmp/in', '/tmp/out.gpg')

        assert cmd[cmd.index('--passphrase-file') + 1] == '/etc/bfrg.pass'
        assert cmd[cmd.index('--pinentry-mode') + 1] == 'loopback'

    def test_preflight_requires_essential_tools(self, make_config, guard):
        pipeline = ArchivePipeline(make_config(), guard, FakeToolbox({'tar', 'gzip'}))

        with pytest.raises(FatalError, match='gpg'):
            pipeline.preflight()


@requires_tar_gzip
class TestBuild:
    """Test building the artifact with real tar and gzip."""

    def test_build_produces_artifact(self, make_config, context, build_ws, source_tree):
        pipeline = CopyCipherPipeline(make_config(), GuardedExec(context), FakeToolbox())

        artifact = pipeline.build(build_ws)

        assert artifact == build_ws.artifact_path
        assert os.path.isfile(build_ws.compressed_path)
        assert os.listdir(build_ws.working_dir) == [os.path.basename(artifact)]

        with tarfile.open(artifact, 'r:gz') as tar:
            names = tar.getnames()
        assert any(name.endswith('docs/readme.txt') for name in names)
        assert any(name.endswith('docs/nested/data.bin') for name in names)
        assert not any(name.endswith('notes.txt~') for name in names)
        assert not any('.cache' in name for name in names)

    def test_missing_source_is_fatal(self, make_config, context, build_ws, tmp_path):
        config = make_config(source_paths=(str(tmp_path / 'gone'),))
        pipeline = CopyCipherPipeline(config, GuardedExec(context), FakeToolbox())

        with pytest.raises(SourceError):
            pipeline.build(build_ws)
        assert not os.path.exists(build_ws.compressed_path)

    def test_container_failure_stops_before_encryption(self, make_config, context, build_ws):
        class FailingPipeline(CopyCipherPipeline):
            def container_commands(self, sources, working_set):
                return [
                    [sys.executable, '-c', 'import sys; sys.exit(3)'],
                    ['gzip'],
                ]

        pipeline = FailingPipeline(make_config(), GuardedExec(context), FakeToolbox())

        with pytest.raises(CompressionError) as exc_info:
            pipeline.build(build_ws)
        assert exc_info.value.exit_status == 3
        assert not os.path.exists(build_ws.artifact_path)

    def test_encryption_failure_is_fatal(self, make_config, context, build_ws):
        class FailingCipher(ArchivePipeline):
            def encrypt_command(self, source, output):
                return [sys.executable, '-c', 'import sys; sys.exit(2)']

        pipeline = FailingCipher(make_config(), GuardedExec(context), FakeToolbox())

        with pytest.raises(CompressionError) as exc_info:
            pipeline.build(build_ws)
        assert exc_info.value.exit_status == 2

    def test_self_replication(self, make_config, context, build_ws):
        pipeline = CopyCipherPipeline(make_config(self_replicate=True), GuardedExec(context), FakeToolbox())

        pipeline.build(build_ws)

        bundles = [name for name in os.listdir(build_ws.working_dir) if name.endswith('-src.zip')]
        assert len(bundles) == 1
        with zipfile.ZipFile(os.path.join(build_ws.working_dir, bundles[0])) as zipf:
            names = zipf.namelist()
        assert 'bfrg/__init__.py' in names
        assert 'bfrg/backup/compression.py' in names
        assert context.ledger.count == 0


class TestRedundancyStage:
    """Test par2 recovery data creation."""

    def test_create_invokes_encoder_in_epoch_dir(self, working_set, context):
        calls = []

        def runner(cmd, cwd=None, **kwargs):
            calls.append((list(cmd), cwd))
            return FakeRunner()(cmd)

        stage = RedundancyStage(GuardedExec(context, runner=runner), FakeToolbox({'par2create'}), 5)

        assert stage.create(working_set) is True
        assert calls == [
            (['par2create', '-q', '-q', '-r5', working_set.artifact_path], working_set.working_dir)
        ]

    def test_zero_percent_disables(self, guard):
        stage = RedundancyStage(guard, FakeToolbox(), 0)
        stage.probe()

        assert stage.enabled is False

    def test_missing_encoder_escalates_and_disables(self, context, guard):
        stage = RedundancyStage(guard, FakeToolbox(), 5)

        stage.probe()

        assert stage.enabled is False
        assert context.ledger.count == 1

    def test_missing_encoder_aborts(self, make_config):
        context = RunContext(make_config(abort_on_error=True), EPOCH)
        stage = RedundancyStage(GuardedExec(context, runner=FakeRunner()), FakeToolbox(), 5)

        with pytest.raises(BackupAborted, match='par2create not found'):
            stage.probe()

    def test_encoder_failure_is_recoverable(self, working_set, context):
        stage = RedundancyStage(
            GuardedExec(context, runner=FakeRunner({'par2create': 1})), FakeToolbox({'par2create'}), 5
        )

        assert stage.create(working_set) is False
        assert context.ledger.count == 1
