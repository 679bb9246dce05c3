"""
Finalizes a locally built index and publishes it with a completion sentinel.

A published index is only safe to read once its ``index.done`` sentinel
exists. The sentinel is written after the index files are fully in place, and
removed first whenever a destination is cleared, so a reader never sees a
sentinel next to a partial index.
"""
import fnmatch
import logging
import os
import shutil
import threading
import traceback
import uuid
from enum import Enum

import boto3
from botocore.exceptions import ClientError

from crawl_indexer.common.config import AWS_REGION, DONE_NAME, HEARTBEAT_INTERVAL, INDEX_PART_GLOB
from crawl_indexer.common.errors import CommitError
from crawl_indexer.indexer.status import LoggingStatusReporter

logger = logging.getLogger("indexer.commit")


class Heartbeat:
    """Reports a status at a fixed interval from a background thread.

    Used as a context manager around long operations; the thread is stopped
    and joined when the block exits, however it exits.
    """

    def __init__(self, reporter, status="closing", interval=HEARTBEAT_INTERVAL):
        self.reporter = reporter
        self.status = status
        self.interval = interval
        self._done = threading.Event()
        self._thread = None

    def _run(self):
        while not self._done.is_set():
            try:
                self.reporter.set_status(self.status)
            except Exception as e:
                logger.warning(f"Heartbeat stopped, status report failed: {e}")
                return
            self._done.wait(self.interval)

    def start(self):
        self._thread = threading.Thread(target=self._run, name="index-heartbeat", daemon=True)
        self._thread.start()

    def stop(self):
        self._done.set()
        if self._thread is not None:
            self._thread.join()

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False


class LocalDestination:
    """Index destination on a local or mounted file system."""

    def __init__(self, path):
        self.path = os.path.abspath(path)

    @property
    def sentinel_path(self):
        return os.path.join(self.path, DONE_NAME)

    def child(self, name):
        return LocalDestination(os.path.join(self.path, name))

    def part_names(self):
        """Names of the partition directories already under this destination."""
        if not os.path.isdir(self.path):
            return []
        return sorted(name for name in os.listdir(self.path)
                      if fnmatch.fnmatch(name, INDEX_PART_GLOB)
                      and os.path.isdir(os.path.join(self.path, name)))

    def clear(self):
        """Remove an earlier index, sentinel first."""
        if os.path.exists(self.sentinel_path):
            os.remove(self.sentinel_path)
        if os.path.isdir(self.path):
            shutil.rmtree(self.path)
        elif os.path.exists(self.path):
            os.remove(self.path)

    def publish(self, local_dir):
        """Move a finished index into place.

        The index is first moved to a hidden staging directory next to the
        destination and then renamed, so the destination path only ever
        holds a complete copy.
        """
        parent = os.path.dirname(self.path)
        os.makedirs(parent, exist_ok=True)
        staging = os.path.join(parent, f".{os.path.basename(self.path)}.publishing-{uuid.uuid4().hex}")
        try:
            shutil.move(local_dir, staging)
            self.clear()
            os.replace(staging, self.path)
        finally:
            if os.path.exists(staging):
                shutil.rmtree(staging, ignore_errors=True)

    def mark_done(self):
        with open(self.sentinel_path, 'x'):
            pass

    def is_done(self):
        return os.path.isfile(self.sentinel_path)

    def __str__(self):
        return self.path


class S3Destination:
    """Index destination under an S3 key prefix."""

    def __init__(self, bucket, prefix='', s3_client=None, region_name=AWS_REGION):
        self.bucket = bucket
        self.prefix = prefix.strip('/')
        self.s3 = s3_client or boto3.client('s3', region_name=region_name)

    def _key(self, name):
        return f"{self.prefix}/{name}" if self.prefix else name

    @property
    def sentinel_key(self):
        return self._key(DONE_NAME)

    def child(self, name):
        return S3Destination(self.bucket, self._key(name), s3_client=self.s3)

    def part_names(self):
        """Names of the partition prefixes already under this destination."""
        prefix = self._key('') if self.prefix else ''
        names = set()
        paginator = self.s3.get_paginator('list_objects_v2')
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix, Delimiter='/'):
            for common in page.get('CommonPrefixes', []):
                name = common['Prefix'][len(prefix):].rstrip('/')
                if fnmatch.fnmatch(name, INDEX_PART_GLOB):
                    names.add(name)
        return sorted(names)

    def clear(self):
        """Delete the sentinel, then every object under the prefix."""
        self.s3.delete_object(Bucket=self.bucket, Key=self.sentinel_key)
        paginator = self.s3.get_paginator('list_objects_v2')
        prefix = self._key('') if self.prefix else ''
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            objects = [{'Key': obj['Key']} for obj in page.get('Contents', [])]
            if objects:
                logger.debug(f"Deleting {len(objects)} objects from s3://{self.bucket}/{prefix}")
                self.s3.delete_objects(Bucket=self.bucket, Delete={'Objects': objects})

    def publish(self, local_dir):
        """Upload every file of a finished index under the prefix."""
        for dirpath, dirnames, filenames in os.walk(local_dir):
            for filename in sorted(filenames):
                local_path = os.path.join(dirpath, filename)
                relative = os.path.relpath(local_path, local_dir).replace(os.sep, '/')
                logger.debug(f"Uploading {local_path} to s3://{self.bucket}/{self._key(relative)}")
                self.s3.upload_file(local_path, self.bucket, self._key(relative))

    def mark_done(self):
        self.s3.put_object(Bucket=self.bucket, Key=self.sentinel_key, Body=b'')

    def is_done(self):
        try:
            self.s3.head_object(Bucket=self.bucket, Key=self.sentinel_key)
            return True
        except ClientError as e:
            if e.response['Error']['Code'] in ('404', 'NoSuchKey', 'NotFound'):
                return False
            raise

    def __str__(self):
        return f"s3://{self.bucket}/{self.prefix}"


def destination_for(uri, s3_client=None):
    """Return the destination for a local path or an ``s3://bucket/prefix`` URI."""
    if uri.startswith('s3://'):
        bucket, _, prefix = uri[len('s3://'):].partition('/')
        if not bucket:
            raise CommitError(f"No bucket in destination {uri!r}")
        return S3Destination(bucket, prefix, s3_client=s3_client)
    return LocalDestination(uri)


class CommitState(Enum):
    OPEN = "open"
    FINALIZING = "finalizing"
    PUBLISHED = "published"
    ABORTED = "aborted"


class IndexCommit:
    """Optimizes, publishes and marks done one worker's index."""

    def __init__(self, builder, destination, reporter=None, interval=HEARTBEAT_INTERVAL):
        self.builder = builder
        self.destination = destination
        self.reporter = reporter or LoggingStatusReporter()
        self.interval = interval
        self.state = CommitState.OPEN

    def close(self):
        """Run the commit.

        Raises:
            IndexWriteError: Optimizing the index failed; nothing was published
            CommitError: Publishing or writing the sentinel failed
        """
        if self.state is not CommitState.OPEN:
            raise CommitError(f"Commit already {self.state.value}")
        try:
            self._finalize()
            self._publish()
        finally:
            if os.path.exists(self.builder.working_dir):
                shutil.rmtree(self.builder.working_dir, ignore_errors=True)

    def _finalize(self):
        self.state = CommitState.FINALIZING
        try:
            with Heartbeat(self.reporter, "closing", self.interval):
                logger.info("Optimizing index.")
                self.builder.optimize()
        except BaseException:
            self.state = CommitState.ABORTED
            logger.error(f"Index finalize failed, not publishing to {self.destination}")
            self.builder.abort()
            raise

    def _publish(self):
        try:
            logger.info(f"Publishing index to {self.destination}")
            self.destination.publish(self.builder.working_dir)
            self.destination.mark_done()
        except Exception as e:
            self.state = CommitState.ABORTED
            logger.error(f"Error publishing index to {self.destination}: {e}")
            logger.error(traceback.format_exc())
            raise CommitError(f"Cannot publish index to {self.destination}: {e}") from e
        except BaseException:
            self.state = CommitState.ABORTED
            raise
        self.state = CommitState.PUBLISHED
        logger.info(f"Index published to {self.destination} ({self.builder.doc_count} documents)")


def close(builder, destination, reporter=None, interval=HEARTBEAT_INTERVAL):
    """Finalize ``builder`` and publish it to ``destination``; returns the finished commit."""
    commit = IndexCommit(builder, destination, reporter=reporter, interval=interval)
    commit.close()
    return commit
