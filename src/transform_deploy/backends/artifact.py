# Copyright 2025 iGenius S.p.A
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

from collections.abc import Mapping
from dataclasses import dataclass
import logging
import os
from pathlib import Path
import zipfile

from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError

from transform_deploy.aws.errors import call_with_retries
from transform_deploy.config.settings import get_settings
from transform_deploy.exceptions import ConfigurationError
from transform_deploy.helpers.logger import setup_logger
from transform_deploy.platform.protocols import ClientFactory

logger = setup_logger(__name__, level=logging.INFO)

UPLOAD_NON_RETRIABLE = ("NoSuchBucket", "AccessDenied")


@dataclass(frozen=True)
class ShippedArtifact:
    bucket: str
    key: str

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"


def build_archive(
    source: Path,
    archive_name: str,
    *,
    extra_files: Mapping[str, str] | None = None,
) -> Path:
    """Zip the contents of ``source`` into ``<source parent>/<archive_name>.zip``.

    Paths inside the archive are relative to ``source``. ``extra_files`` maps
    archive paths to text content and is written after the directory walk, so
    generated files win over same-named files from the publish output.
    A stale archive from a previous run is replaced.
    """
    source = Path(source)
    if not source.is_dir():
        raise ConfigurationError(message=f"Publish directory {source} does not exist")

    archive = source.resolve().parent / f"{archive_name}.zip"
    if archive.exists():
        logger.debug(f"Removing stale archive {archive}")
        archive.unlink()

    extra_files = dict(extra_files or {})
    count = 0
    with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
        for root, dirs, files in os.walk(source):
            dirs.sort()
            for name in sorted(files):
                path = Path(root) / name
                arcname = path.relative_to(source).as_posix()
                if arcname in extra_files:
                    continue
                zf.write(path, arcname)
                count += 1
        for arcname, content in extra_files.items():
            zf.writestr(arcname, content)
            count += 1

    logger.info(f"Packaged {count} files into [cyan]{archive}[/cyan]")
    return archive


class ArtifactShipper:
    """Package a publish directory and upload it to S3."""

    def __init__(self, session: ClientFactory, *, attempts: int | None = None):
        self.session = session
        self.attempts = attempts or get_settings().max_attempts

    def upload(self, archive: Path, bucket: str, key: str) -> ShippedArtifact:
        s3 = self.session.client("s3")
        logger.info(f"Uploading {archive.name} to s3://{bucket}/{key}")
        call_with_retries(
            f"Upload of {archive.name} to s3://{bucket}/{key}",
            lambda: s3.upload_file(str(archive), bucket, key),
            attempts=self.attempts,
            non_retriable=UPLOAD_NON_RETRIABLE,
            retry_on=(ClientError, BotoCoreError, S3UploadFailedError),
        )
        return ShippedArtifact(bucket, key)

    def ship(
        self,
        source: Path,
        archive_name: str,
        bucket: str,
        key: str,
        *,
        extra_files: Mapping[str, str] | None = None,
    ) -> ShippedArtifact:
        """Build, upload and remove the local archive, whatever the upload outcome."""
        archive = build_archive(source, archive_name, extra_files=extra_files)
        try:
            shipped = self.upload(archive, bucket, key)
        finally:
            archive.unlink(missing_ok=True)
        logger.info(f"[bold green]Uploaded[/bold green] {shipped.uri}")
        return shipped
