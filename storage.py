"""
Upload/download lifecycle for the share directory.

Every stored file lives flat in one directory as ``<millis>-<original name>``.
While its bytes are still arriving it carries the ``.uploading`` suffix and is
invisible to listing, download and delete. The directory is the only state.
"""

import errno
import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from flask import Request, current_app

logger = logging.getLogger(__name__)

UPLOADING_SUFFIX = '.uploading'
TIMESTAMP_PREFIX = re.compile(r'^\d+-')

# room for `<stamp>-<name>.uploading` in a 255 byte directory entry
NAME_MAX = 255
STAMP_RESERVE = 20
MAX_ORIGINAL_NAME_BYTES = NAME_MAX - STAMP_RESERVE - len('-') - len(UPLOADING_SUFFIX)

DOWNLOAD_CHUNK_SIZE = 1024 * 1024
DOWNLOAD_DELETE_DELAY = 1.0
ABANDONED_UPLOAD_MAX_AGE = 2 * 60 * 60
RETENTION_MAX_AGE = 24 * 60 * 60
CLEANUP_INTERVAL = 30 * 60


class ShareError(Exception):
    """Base class for failures reported to the client as JSON."""

    status_code = 500
    message = 'Internal server error'

    def __init__(self, message=None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class NoFilesProvided(ShareError):
    status_code = 400
    message = 'No files were selected'


class PayloadTooLarge(ShareError):
    status_code = 413
    message = 'File too large'


class StorageFull(ShareError):
    status_code = 507
    message = 'Not enough disk space to store the file'


class NotFound(ShareError):
    status_code = 404
    message = 'File not found'


class RenameFailure(ShareError):
    message = 'Error finalizing upload'


class ReadStreamFailure(ShareError):
    message = 'Error reading file'


class DeleteFailure(ShareError):
    message = 'Error deleting file'


class DirectoryAccessFailure(ShareError):
    message = 'Error listing files'


@dataclass(frozen=True)
class StoredFile:
    stored_name: str
    original_name: str
    size_bytes: int
    modified_time: float


@dataclass
class SweepResult:
    abandoned: int = 0
    expired: int = 0
    failed: int = 0


def ensure_storage_dir(directory):
    os.makedirs(directory, exist_ok=True)


def decode_original_name(raw_name):
    """Undo a latin-1 reading of UTF-8 filename bytes, keeping the raw value if that fails."""
    try:
        return raw_name.encode('latin-1').decode('utf-8')
    except UnicodeError:
        return raw_name


def clean_original_name(raw_name):
    """Decode a client filename and reduce it to a bare directory entry name."""
    name = decode_original_name(raw_name or '')
    name = name.replace('\\', '/').rsplit('/', 1)[-1].replace('\x00', '').strip()
    if name in ('', '.', '..'):
        name = 'file'
    name = shorten_name(name)
    # keep completed names out of the in-progress namespace
    if name.endswith(UPLOADING_SUFFIX):
        name += '_'
    return name


def shorten_name(name, limit=MAX_ORIGINAL_NAME_BYTES):
    """Cut ``name`` to at most ``limit`` UTF-8 bytes, keeping its extension."""
    if len(name.encode('utf-8')) <= limit:
        return name
    stem, ext = os.path.splitext(name)
    if len(ext.encode('utf-8')) > limit // 2:
        stem, ext = name, ''
    room = limit - len(ext.encode('utf-8'))
    stem = stem.encode('utf-8')[:room].decode('utf-8', 'ignore')
    return (stem + ext).strip() or 'file'


def original_name_of(stored_name):
    return TIMESTAMP_PREFIX.sub('', stored_name, count=1)


def is_completed_name(name):
    return bool(name) and not name.startswith('.') and not name.endswith(UPLOADING_SUFFIX)


def _create_upload_file(directory, original_name):
    stamp = int(time.time() * 1000)
    while True:
        stored_name = f'{stamp}-{original_name}'
        if not os.path.exists(os.path.join(directory, stored_name)):
            try:
                handle = open(os.path.join(directory, stored_name + UPLOADING_SUFFIX), 'xb')
            except FileExistsError:
                pass
            else:
                return stored_name, handle
        stamp += 1


def _next_stamp(stored_name):
    stamp, rest = stored_name.split('-', 1)
    return f'{int(stamp) + 1}-{rest}'


# filesystems without hard links (FAT, some network mounts)
_NO_LINK_ERRNOS = {errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP, errno.ENOSYS}


def _move_exclusive(src, dst):
    """Move ``src`` to ``dst``, raising FileExistsError instead of overwriting."""
    try:
        os.link(src, dst)
    except FileExistsError:
        raise
    except OSError as exc:
        if exc.errno not in _NO_LINK_ERRNOS:
            raise
        if os.path.lexists(dst):
            raise FileExistsError(errno.EEXIST, 'File exists', dst) from exc
        os.rename(src, dst)
        return
    try:
        os.remove(src)
    except OSError as exc:
        # the completed name is already in place; the sweep removes the leftover
        logger.warning("Could not remove %s after promotion: %s", src, exc)


class UploadStream:
    """Disk sink for one multipart file part.

    The multipart parser writes the part into this object chunk by chunk, so
    nothing larger than a parser buffer is held in memory. The bytes land in
    ``<stored name>.uploading`` until :meth:`promote` moves it into place.
    """

    def __init__(self, directory, raw_name, max_size=None):
        self.original_name = clean_original_name(raw_name)
        self.max_size = max_size
        self.size = 0
        self.directory = directory
        self.stored_name, self._file = _create_upload_file(directory, self.original_name)
        self.temp_path = os.path.join(directory, self.stored_name + UPLOADING_SUFFIX)
        self.final_path = os.path.join(directory, self.stored_name)

    @property
    def closed(self):
        return self._file.closed

    def write(self, data):
        if self.max_size is not None and self.size + len(data) > self.max_size:
            logger.warning("Upload of '%s' exceeds %d bytes, discarding", self.original_name, self.max_size)
            self.discard()
            raise PayloadTooLarge()
        try:
            self._file.write(data)
        except OSError as exc:
            logger.error("Failed writing upload '%s': %s", self.original_name, exc)
            self.discard()
            raise StorageFull() from exc
        self.size += len(data)
        return len(data)

    def seek(self, offset, whence=os.SEEK_SET):
        return self._file.seek(offset, whence)

    def tell(self):
        return self._file.tell()

    def close(self):
        self._file.close()

    def discard(self):
        """Close and remove the in-progress file."""
        self.close()
        try:
            os.remove(self.temp_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error("Could not discard %s: %s", self.temp_path, exc)

    def promote(self):
        """Close the in-progress file and move it to its completed name.

        The move never replaces an existing file: if the completed name was
        taken while the bytes were arriving, the stamp is bumped instead.
        """
        self.close()
        while True:
            try:
                _move_exclusive(self.temp_path, self.final_path)
            except FileExistsError:
                self.stored_name = _next_stamp(self.stored_name)
                self.final_path = os.path.join(self.directory, self.stored_name)
            except OSError as exc:
                logger.error("Error finalizing '%s': %s", self.original_name, exc)
                raise RenameFailure() from exc
            else:
                break
        self.size = os.path.getsize(self.final_path)
        logger.info("Upload completed: '%s' -> %s (%d bytes)", self.original_name, self.stored_name, self.size)
        return StoredFile(self.stored_name, self.original_name, self.size, os.path.getmtime(self.final_path))


class UploadRequest(Request):
    """Flask request that streams uploaded file parts into the share directory."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.upload_streams = []

    def _get_file_stream(self, total_content_length, content_type, filename=None, content_length=None):
        if not filename:
            return super()._get_file_stream(total_content_length, content_type, filename, content_length)
        directory = current_app.config['UPLOAD_FOLDER']
        ensure_storage_dir(directory)
        stream = UploadStream(directory, filename, current_app.config.get('MAX_UPLOAD_SIZE'))
        self.upload_streams.append(stream)
        return stream


def promote_uploads(streams, all_or_nothing=False):
    """Promote every stream in order.

    A rename failure aborts the remaining promotions with :class:`RenameFailure`.
    Files promoted before the failure stay in place unless ``all_or_nothing``
    is set, in which case they are deleted again.
    """
    promoted = []
    for stream in streams:
        try:
            stored = stream.promote()
        except RenameFailure:
            if all_or_nothing:
                _rollback([s.final_path for s in streams[:len(promoted)]])
            raise
        promoted.append(stored)
    return promoted


def _rollback(paths):
    for path in paths:
        try:
            os.remove(path)
            logger.info("Rolled back %s", os.path.basename(path))
        except OSError as exc:
            logger.warning("Rollback delete failed for %s: %s", path, exc)


def list_files(directory):
    """Return the completed files in ``directory``, most recently modified first."""
    files = []
    try:
        with os.scandir(directory) as entries:
            for entry in entries:
                if not is_completed_name(entry.name):
                    continue
                try:
                    if not entry.is_file():
                        continue
                    stat = entry.stat()
                except FileNotFoundError:
                    # removed by a download or a sweep while we were scanning
                    continue
                files.append(StoredFile(entry.name, original_name_of(entry.name), stat.st_size, stat.st_mtime))
    except FileNotFoundError:
        ensure_storage_dir(directory)
        return []
    except OSError as exc:
        logger.error("Error listing %s: %s", directory, exc)
        raise DirectoryAccessFailure() from exc
    files.sort(key=lambda f: (-f.modified_time, f.stored_name))
    return files


def completed_path(directory, stored_name):
    """Return the path of a completed file, or raise :class:`NotFound`."""
    if not is_completed_name(stored_name) or os.path.basename(stored_name) != stored_name or '\\' in stored_name:
        raise NotFound()
    path = os.path.join(directory, stored_name)
    if not os.path.isfile(path):
        raise NotFound()
    return path


def open_download(directory, stored_name):
    """Open a completed file for reading and describe it."""
    path = completed_path(directory, stored_name)
    try:
        handle = open(path, 'rb')
    except FileNotFoundError:
        raise NotFound() from None
    except OSError as exc:
        logger.error("Error opening %s: %s", path, exc)
        raise ReadStreamFailure() from exc
    stat = os.fstat(handle.fileno())
    return handle, StoredFile(stored_name, original_name_of(stored_name), stat.st_size, stat.st_mtime)


def stream_download(handle, path, chunk_size=DOWNLOAD_CHUNK_SIZE, delete_delay=DOWNLOAD_DELETE_DELAY):
    """Yield the file in chunks and schedule its deletion once every byte went out.

    Closing the generator early (client abort) or a read error ends the
    transfer without deleting the file.
    """
    name = os.path.basename(path)
    with handle:
        while True:
            try:
                chunk = handle.read(chunk_size)
            except OSError as exc:
                logger.error("Error reading %s during download: %s", name, exc)
                return
            if not chunk:
                break
            yield chunk
    logger.info("Download completed: %s", name)
    schedule_deletion(path, delete_delay)


_deletion_scheduler = None
_deletion_scheduler_lock = threading.Lock()


def _get_deletion_scheduler():
    global _deletion_scheduler
    with _deletion_scheduler_lock:
        if _deletion_scheduler is None:
            _deletion_scheduler = BackgroundScheduler(daemon=True)
            _deletion_scheduler.start()
        return _deletion_scheduler


def schedule_deletion(path, delay=DOWNLOAD_DELETE_DELAY):
    return _get_deletion_scheduler().add_job(
        func=_delete_downloaded,
        trigger='date',
        run_date=datetime.now() + timedelta(seconds=delay),
        args=[path],
        name=f'Delete {os.path.basename(path)}',
        misfire_grace_time=None,
    )


def _delete_downloaded(path):
    try:
        os.remove(path)
    except FileNotFoundError:
        logger.debug("%s was already removed", path)
    except OSError as exc:
        # orphaned until the next sweep
        logger.error("Error deleting %s after download: %s", path, exc)
    else:
        logger.info("Deleted after download: %s", os.path.basename(path))


def remove_file(directory, stored_name):
    path = completed_path(directory, stored_name)
    try:
        os.remove(path)
    except FileNotFoundError:
        raise NotFound() from None
    except OSError as exc:
        logger.error("Error deleting %s: %s", path, exc)
        raise DeleteFailure() from exc
    logger.info("Deleted on request: %s", stored_name)


def sweep(directory, abandoned_max_age=ABANDONED_UPLOAD_MAX_AGE, retention_max_age=RETENTION_MAX_AGE, now=None):
    """Delete abandoned in-progress uploads and completed files past retention.

    ``retention_max_age`` of ``None`` keeps completed files forever. Each
    failed delete is logged and counted; the sweep carries on.
    """
    if now is None:
        now = time.time()
    result = SweepResult()
    try:
        with os.scandir(directory) as scanner:
            entries = [entry for entry in scanner if not entry.name.startswith('.')]
    except OSError as exc:
        logger.error("Cleanup could not read %s: %s", directory, exc)
        return result

    for entry in entries:
        try:
            if not entry.is_file():
                continue
            age = now - entry.stat().st_mtime
        except OSError:
            continue

        if entry.name.endswith(UPLOADING_SUFFIX):
            if age <= abandoned_max_age:
                continue
            kind = 'abandoned'
        elif retention_max_age is not None and age > retention_max_age:
            kind = 'expired'
        else:
            continue

        try:
            os.remove(entry.path)
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.error("Cleanup failed to delete %s: %s", entry.name, exc)
            result.failed += 1
            continue

        if kind == 'abandoned':
            result.abandoned += 1
            logger.info("Removed abandoned upload: %s", entry.name)
        else:
            result.expired += 1
            logger.info("Removed expired file: %s", entry.name)

    if result.abandoned or result.expired or result.failed:
        logger.info("Cleanup finished: %d abandoned, %d expired, %d failed",
                    result.abandoned, result.expired, result.failed)
    return result


def purge_incomplete_uploads(directory):
    """Delete every in-progress upload left behind by a previous run."""
    removed = 0
    try:
        with os.scandir(directory) as scanner:
            names = [entry.name for entry in scanner if entry.name.endswith(UPLOADING_SUFFIX)]
    except OSError as exc:
        logger.error("Could not scan %s for incomplete uploads: %s", directory, exc)
        return 0
    for name in names:
        try:
            os.remove(os.path.join(directory, name))
            removed += 1
        except OSError as exc:
            logger.error("Could not delete incomplete upload %s: %s", name, exc)
    if removed:
        logger.info("Cleaned %d incomplete upload(s) from a previous session", removed)
    return removed


class Reclaimer:
    """Runs :func:`sweep` as an interval job on a background scheduler."""

    JOB_ID = 'sweep_share_directory'

    def __init__(self, directory, *, interval=CLEANUP_INTERVAL,
                 abandoned_max_age=ABANDONED_UPLOAD_MAX_AGE, retention_max_age=RETENTION_MAX_AGE):
        if retention_max_age is not None and abandoned_max_age >= retention_max_age:
            raise ValueError('abandoned upload age must be shorter than the retention age')
        self.directory = directory
        self.interval = interval
        self.abandoned_max_age = abandoned_max_age
        self.retention_max_age = retention_max_age
        self.scheduler = BackgroundScheduler(daemon=True)
        self.scheduler.add_job(
            func=self._run,
            trigger='interval',
            seconds=interval,
            id=self.JOB_ID,
            name='Clean up the share directory',
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )

    def start(self):
        if not self.scheduler.running:
            self.scheduler.start()

    def shutdown(self, wait=False):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)

    def run_once(self):
        logger.debug("Running cleanup of %s", self.directory)
        return sweep(self.directory, self.abandoned_max_age, self.retention_max_age)

    def _run(self):
        try:
            self.run_once()
        except Exception:
            logger.exception("Cleanup sweep failed")
