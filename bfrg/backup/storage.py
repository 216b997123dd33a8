"""
Storage handlers, one per destination class.

Supports:
- LocalStorage: block-device paths, rsync two-pass copy or per-file copy with verify
- ScpStorage: remote copy over scp
- SftpStorage: remote copy over SFTP (paramiko), used when scp is not installed
- RsyncStorage: synchronizing copy with rsync over ssh
- RcloneStorage: cloud copy with rclone, followed by a one-way check
- S3Storage: cloud copy to ``s3://bucket/prefix`` addresses with boto3

Every handler copies the whole epoch directory of the working set, so each
destination ends up with one ``<epoch>/`` directory per run. Handlers never
raise on a failed transfer: failures go through the guard and come back as
False when the run continues.
"""

import os
import re
import shutil
import filecmp
import hashlib
import logging
import posixpath
from typing import Optional, Tuple

import boto3
import paramiko
from botocore.exceptions import ClientError, BotoCoreError
from paramiko import SSHClient, AutoAddPolicy

from bfrg.models import WorkingSet
from .guard import GuardedExec


logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when an in-process transfer fails."""
    pass


def files_identical(src: str, dst: str) -> bool:
    """Byte-for-byte comparison of two files."""
    logger.info(f"verifying file integrity of {dst}")
    try:
        return filecmp.cmp(src, dst, shallow=False)
    except OSError as e:
        logger.error(f"could not compare {src} and {dst}: {e}")
        return False


def safe_copy_file(guard: GuardedExec, src: str, dst_dir: str) -> bool:
    """
    Copy one file into a directory and verify the copy.

    Each check is escalated on its own: source exists, destination exists,
    destination writable, copy, byte comparison.

    Returns:
        True if the file was copied and verified
    """
    logger.info(f"copying {src} to {dst_dir}")
    target = os.path.join(dst_dir, os.path.basename(src))

    if not (guard.check(os.path.isfile(src), f"File {src} does not exist")
            and guard.check(os.path.isdir(dst_dir), f"Path {dst_dir} does not exist")
            and guard.check(os.access(dst_dir, os.W_OK), f"Path {dst_dir} is not writable")):
        return False

    guard.context.check_interrupted()
    try:
        shutil.copy2(src, target)
    except OSError as e:
        return guard.check(False, f"Copying {src} to {dst_dir} failed: {e}")

    return guard.check(files_identical(src, target), f"There was an error validating {target}")


class Storage:
    """Base class of the per-class transfer handlers."""

    name = 'storage'

    def __init__(self, guard: GuardedExec):
        self.guard = guard

    def transfer(self, working_set: WorkingSet, address: str) -> bool:
        raise NotImplementedError

    def verify(self, working_set: WorkingSet, address: str) -> bool:
        """One-way check of a finished transfer; only cloud handlers verify."""
        return True

    def __repr__(self):
        return f'<{self.__class__.__name__}>'


class LocalStorage(Storage):
    """
    Handler for local block-device targets.

    Prefers rsync (a plain pass, then a checksum pass); without rsync every
    file is copied and compared on its own.
    """

    name = 'local'

    def __init__(self, guard: GuardedExec, use_rsync: bool = True):
        super().__init__(guard)
        self.use_rsync = use_rsync

    def transfer(self, working_set: WorkingSet, address: str) -> bool:
        logger.info("copying archive folder")
        if not (self.guard.check(os.path.isdir(address), f"Path {address} does not exist")
                and self.guard.check(os.access(address, os.W_OK), f"Path {address} is not writable")):
            return False

        if self.use_rsync:
            return (self.guard.invoke(['rsync', '-qat', working_set.working_dir, address])
                    and self.guard.invoke(['rsync', '-qact', working_set.working_dir, address]))

        logger.info("rsync not available, copying file by file")
        target = os.path.join(address, str(working_set.epoch))
        try:
            os.makedirs(target, exist_ok=True)
        except OSError as e:
            return self.guard.check(False, f"Could not create {target}: {e}")

        ok = True
        for name in sorted(os.listdir(working_set.working_dir)):
            copied = safe_copy_file(self.guard, os.path.join(working_set.working_dir, name), target)
            ok = ok and copied
        return ok


class ScpStorage(Storage):
    """Remote copy of the epoch directory with scp."""

    name = 'scp'

    def transfer(self, working_set: WorkingSet, address: str) -> bool:
        logger.info(f"initiating archive folder remote copy to {address}")
        return self.guard.invoke(['scp', '-qr', working_set.working_dir, address])


class RsyncStorage(Storage):
    """Synchronizing remote copy with rsync over ssh."""

    name = 'rsync'

    def transfer(self, working_set: WorkingSet, address: str) -> bool:
        logger.info(f"using rsync over ssh for remote copying {address}")
        return self.guard.invoke(['rsync', '-qzact', '-e', 'ssh', working_set.working_dir, address])


class RcloneStorage(Storage):
    """Cloud copy with rclone into ``<address>/<epoch>``."""

    name = 'rclone'

    def _target(self, working_set: WorkingSet, address: str) -> str:
        return f"{address.rstrip('/')}/{working_set.epoch}"

    def transfer(self, working_set: WorkingSet, address: str) -> bool:
        logger.info(f"using rclone for copying {address}")
        return self.guard.invoke(
            ['rclone', '-q', 'copy', working_set.working_dir, self._target(working_set, address)]
        )

    def verify(self, working_set: WorkingSet, address: str) -> bool:
        logger.info("verifying copied files")
        return self.guard.invoke(
            ['rclone', '-q', 'check', '--one-way', working_set.working_dir, self._target(working_set, address)]
        )


_REMOTE_ADDRESS = re.compile(r'^(?:(?P<user>[^@/]+)@)?(?P<host>[^:/]+):(?P<path>.*)$')


def parse_remote_address(address: str) -> Tuple[Optional[str], str, str]:
    """
    Split a ``[user@]host:path`` address.

    Raises:
        StorageError: If the address is not in scp syntax
    """
    match = _REMOTE_ADDRESS.match(address)
    if not match:
        raise StorageError(f"Invalid remote address: {address}")
    return match.group('user'), match.group('host'), match.group('path')


class SftpStorage(Storage):
    """
    Remote copy over SFTP.

    Authenticates with the SSH agent or the default key files, the same
    material scp would use; no credentials are stored per destination.
    """

    name = 'sftp'

    def __init__(self, guard: GuardedExec, port: int = 22, timeout: int = 30):
        super().__init__(guard)
        self.port = port
        self.timeout = timeout

    def transfer(self, working_set: WorkingSet, address: str) -> bool:
        self.guard.context.check_interrupted()
        logger.info(f"invoking sftp upload of {working_set.working_dir} to {address}")
        try:
            self._upload(working_set, address)
            return True
        except StorageError as e:
            logger.error(str(e))
            self.guard.recover(str(e))
            return False

    def _connect(self, user: Optional[str], host: str) -> SSHClient:
        """
        Establish SSH connection.

        Raises:
            StorageError: If connection fails
        """
        try:
            ssh_client = SSHClient()
            ssh_client.load_system_host_keys()
            ssh_client.set_missing_host_key_policy(AutoAddPolicy())
            ssh_client.connect(
                hostname=host,
                port=self.port,
                username=user,
                timeout=self.timeout,
                allow_agent=True,
                look_for_keys=True
            )
            return ssh_client
        except paramiko.AuthenticationException as e:
            raise StorageError(f"SSH authentication failed for {host}: {e}")
        except paramiko.SSHException as e:
            raise StorageError(f"SSH connection to {host} failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to connect to {host}: {e}")

    def _upload(self, working_set: WorkingSet, address: str):
        user, host, path = parse_remote_address(address)
        remote_dir = posixpath.join(path or '.', str(working_set.epoch))

        ssh_client = self._connect(user, host)
        try:
            sftp_client = ssh_client.open_sftp()
            try:
                try:
                    sftp_client.stat(remote_dir)
                except FileNotFoundError:
                    sftp_client.mkdir(remote_dir)

                for name in sorted(os.listdir(working_set.working_dir)):
                    local_path = os.path.join(working_set.working_dir, name)
                    if os.path.isfile(local_path):
                        sftp_client.put(local_path, posixpath.join(remote_dir, name))
            finally:
                sftp_client.close()
        except FileNotFoundError:
            raise StorageError(f"Remote path not found: {address}")
        except PermissionError:
            raise StorageError(f"Permission denied writing to {address}")
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"Failed to upload to {address}: {e}")
        finally:
            ssh_client.close()


def parse_s3_address(address: str) -> Tuple[str, str]:
    """
    Split ``s3://bucket/prefix`` into bucket and prefix.

    Raises:
        StorageError: If the address is not an S3 URL
    """
    if not address.startswith('s3://'):
        raise StorageError(f"Invalid S3 address: {address}")
    bucket, _, prefix = address[len('s3://'):].partition('/')
    if not bucket:
        raise StorageError(f"Invalid S3 address: {address}")
    return bucket, prefix.strip('/')


def is_s3_address(address: str) -> bool:
    return address.startswith('s3://')


class S3Storage(Storage):
    """
    Cloud copy to AWS S3.

    Uploads every file of the epoch directory with the key format:
    {prefix}/{epoch}/{filename}

    Credentials come from the standard AWS chain (environment, shared
    config, instance profile).
    """

    name = 's3'

    # Use multipart upload for files larger than 100MB
    MULTIPART_THRESHOLD = 100 * 1024 * 1024
    CHUNK_SIZE = 10 * 1024 * 1024

    def __init__(self, guard: GuardedExec, s3_client=None):
        super().__init__(guard)
        self._s3_client = s3_client

    @property
    def s3_client(self):
        if self._s3_client is None:
            try:
                self._s3_client = boto3.client('s3')
            except (BotoCoreError, ValueError) as e:
                raise StorageError(f"Failed to initialize S3 client: {e}")
        return self._s3_client

    def _keys(self, working_set: WorkingSet, address: str):
        bucket, prefix = parse_s3_address(address)
        base = f"{prefix}/{working_set.epoch}" if prefix else str(working_set.epoch)
        for name in sorted(os.listdir(working_set.working_dir)):
            local_path = os.path.join(working_set.working_dir, name)
            if os.path.isfile(local_path):
                yield local_path, bucket, f"{base}/{name}"

    def transfer(self, working_set: WorkingSet, address: str) -> bool:
        self.guard.context.check_interrupted()
        try:
            for local_path, bucket, key in self._keys(working_set, address):
                logger.info(f"invoking s3 upload of {local_path} to s3://{bucket}/{key}")
                self.upload(local_path, bucket, key)
            return True
        except StorageError as e:
            logger.error(str(e))
            self.guard.recover(str(e))
            return False

    def verify(self, working_set: WorkingSet, address: str) -> bool:
        logger.info("verifying copied files")
        try:
            for local_path, bucket, key in self._keys(working_set, address):
                self.check_object(local_path, bucket, key)
            return True
        except StorageError as e:
            logger.error(str(e))
            self.guard.recover(str(e))
            return False

    def upload(self, local_path: str, bucket: str, key: str):
        """
        Upload one file to S3.

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        try:
            file_size = os.path.getsize(local_path)
            if file_size > self.MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, bucket, key)
            else:
                self._simple_upload(local_path, bucket, key)

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to upload to S3: {e}")

    def _simple_upload(self, local_path: str, bucket: str, key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=bucket,
                Key=key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, bucket: str, key: str):
        """
        Upload large file using multipart upload.

        Args:
            local_path: Path to local file
            bucket: S3 bucket name
            key: S3 object key
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=bucket,
            Key=key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(self.CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=bucket,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            # Abort multipart upload on error
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=bucket,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def check_object(self, local_path: str, bucket: str, key: str):
        """
        Re-read an uploaded object's metadata and compare it to the local file.

        Size always has to match; single-part uploads are also compared by MD5
        against the ETag.

        Raises:
            StorageError: On a mismatch or when the object cannot be read
        """
        try:
            head = self.s3_client.head_object(Bucket=bucket, Key=key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 check failed for s3://{bucket}/{key} ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 check failed for s3://{bucket}/{key}: {e}")

        size = os.path.getsize(local_path)
        if head['ContentLength'] != size:
            raise StorageError(
                f"Size mismatch for s3://{bucket}/{key}: {head['ContentLength']} != {size}"
            )

        etag = head.get('ETag', '').strip('"')
        if etag and '-' not in etag:
            digest = hashlib.md5()
            with open(local_path, 'rb') as f:
                for chunk in iter(lambda: f.read(1024 * 1024), b''):
                    digest.update(chunk)
            if digest.hexdigest() != etag:
                raise StorageError(f"Checksum mismatch for s3://{bucket}/{key}")
