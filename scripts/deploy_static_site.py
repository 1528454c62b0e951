#!/usr/bin/env python3
"""
deploy_static_site.py — Deploy a static site build to S3 and invalidate CloudFront.

Replaces the remote copy of a dist/ build in one pass:
  1. Delete the remote _astro/ and category/ prefixes plus the remote
     counterparts of every other root file and folder.
  2. Upload root files, other root folders, _astro/ and category/.
  3. Optionally create a CloudFront invalidation and poll it until it
     completes (10s interval, 5 minute ceiling).

Cache-Control:
  _astro/**        public, max-age=31536000, immutable
  *.html / *.htm   public, max-age=0, must-revalidate
  everything else  public, max-age=31536000, immutable

Credentials are read from AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY, either
exported or placed in .env.local / .env in the working directory.

Usage:
    uv run python scripts/deploy_static_site.py <dist-path> <s3-path> <bucket-name> \
        [region] [distribution-id] [invalidation-paths] [monitor-progress]

Exit codes:
    0  Upload finished (invalidation outcome and per-file failures do not change this)
    1  Usage error, missing credentials or fatal deploy error
"""

from __future__ import annotations

import argparse
import logging
import mimetypes
import os
import sys
import time
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger("deploy_static_site")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

DEFAULT_REGION = "us-east-1"
IMMUTABLE_FOLDER = "_astro"
CATEGORY_FOLDER = "category"
KNOWN_FOLDERS: tuple[str, ...] = (IMMUTABLE_FOLDER, CATEGORY_FOLDER)

CACHE_CONTROL_IMMUTABLE = "public, max-age=31536000, immutable"
CACHE_CONTROL_REVALIDATE = "public, max-age=0, must-revalidate"
DEFAULT_CONTENT_TYPE = "application/octet-stream"
HTML_EXTENSIONS = frozenset({".html", ".htm"})

POLL_INTERVAL_SECONDS = 10
POLL_TIMEOUT_SECONDS = 300
STATUS_COMPLETED = "completed"
STATUS_IN_PROGRESS = "inprogress"

_REQUIRED_CREDENTIALS = ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY")
_DOTENV_FILENAMES = (".env.local", ".env")
# One attempt per call; nothing in this tool retries.
_CLIENT_CONFIG = Config(retries={"max_attempts": 1, "mode": "standard"})

USAGE_EPILOG = """\
arguments:
  dist-path           Local path to the dist folder containing _astro and/or category
  s3-path             Key prefix to deploy under (e.g. "my-app/" or "production/")
  bucket-name         Target S3 bucket
  region              AWS region (optional; AWS_REGION or us-east-1)
  distribution-id     CloudFront distribution id (optional)
  invalidation-paths  Comma-separated paths to invalidate (e.g. "/website/app/*")
  monitor-progress    Poll the invalidation until it completes (default: true)

examples:
  deploy_static_site.py ./dist my-app/ my-bucket
  deploy_static_site.py ./dist production/ my-bucket us-west-2
  deploy_static_site.py ./dist website/app/ my-bucket us-east-1 E1DTLETE7MR3SY "/website/app/*"
  deploy_static_site.py ./dist website/app/ my-bucket us-east-1 E1DTLETE7MR3SY "/website/app/*" false

environment:
  AWS_ACCESS_KEY_ID      AWS access key (required)
  AWS_SECRET_ACCESS_KEY  AWS secret key (required)
  AWS_REGION             Default region (optional)
  Values may also be set in .env.local or .env in the working directory.
"""


class DeployError(RuntimeError):
    """Base class for fatal deploy errors."""


class PrefixDeletionError(DeployError):
    """Raised when any object under a prefix cannot be deleted."""

    def __init__(self, prefix: str, message: str) -> None:
        super().__init__(message)
        self.prefix = prefix


class CredentialsError(DeployError):
    """Raised when required AWS credential variables are missing."""


@dataclass(frozen=True)
class UploadResult:
    uploaded: int = 0
    failed: int = 0

    def __add__(self, other: UploadResult) -> UploadResult:
        return UploadResult(
            uploaded=self.uploaded + other.uploaded,
            failed=self.failed + other.failed,
        )


@dataclass(frozen=True)
class DeploySummary:
    uploaded: int
    failed: int
    deleted: int
    elapsed_seconds: float


@dataclass(frozen=True)
class InvalidationEvent:
    invalidation_id: str
    status: str
    create_time: str | None
    paths: tuple[str, ...]
    attempt: int


@dataclass(frozen=True)
class MonitorResult:
    completed: bool
    status: str | None
    checks: int
    timed_out: bool = False


@dataclass(frozen=True)
class DeployArgs:
    dist_path: Path
    s3_path: str
    bucket_name: str
    region: str | None
    distribution_id: str | None
    invalidation_paths: tuple[str, ...]
    monitor_progress: bool


# ---------------------------------------------------------------------------
# Cache policy
# ---------------------------------------------------------------------------


def is_html_file(path: Path | str) -> bool:
    return Path(path).suffix.lower() in HTML_EXTENSIONS


def cache_control_for(path: Path | str, immutable_folder: bool = False) -> str:
    """Return the Cache-Control directive for a local file.

    Descendants of the immutable-asset folder are always immutable, HTML
    elsewhere must revalidate, and every other asset is immutable.
    """
    if immutable_folder:
        return CACHE_CONTROL_IMMUTABLE
    if is_html_file(path):
        return CACHE_CONTROL_REVALIDATE
    return CACHE_CONTROL_IMMUTABLE


def content_type_for(path: Path | str) -> str:
    content_type, _ = mimetypes.guess_type(str(path))
    return content_type or DEFAULT_CONTENT_TYPE


def normalise_status(status: str | None) -> str:
    return "".join(ch for ch in (status or "").lower() if ch not in " _-")


def base_prefix(s3_path: str) -> str:
    """Return the key prefix for an s3-path argument, '' for the bucket root.

    Only a trailing slash is added; a leading slash is part of the key.
    """
    stripped = s3_path.strip()
    if not stripped:
        return ""
    return stripped if stripped.endswith("/") else f"{stripped}/"


def join_key(prefix: str, name: str) -> str:
    return f"{prefix}/{name}" if prefix else name


# ---------------------------------------------------------------------------
# Uploader
# ---------------------------------------------------------------------------


class StaticSiteUploader:
    """Deploys a dist folder into one bucket and optionally one distribution."""

    def __init__(
        self,
        bucket_name: str,
        region: str = DEFAULT_REGION,
        distribution_id: str | None = None,
        *,
        s3_client: Any = None,
        cloudfront_client: Any = None,
    ) -> None:
        self.bucket_name = bucket_name
        self.region = region
        self.distribution_id = distribution_id
        self.s3 = s3_client or boto3.client("s3", region_name=region, config=_CLIENT_CONFIG)
        self.cloudfront = cloudfront_client or boto3.client(
            "cloudfront", region_name=region, config=_CLIENT_CONFIG
        )

    # -- uploads ------------------------------------------------------------

    def upload_file(self, path: Path, key: str, immutable_folder: bool = False) -> UploadResult:
        content_type = content_type_for(path)
        cache_control = cache_control_for(path, immutable_folder)
        put_kwargs: dict[str, Any] = {
            "Bucket": self.bucket_name,
            "Key": key,
            "ContentType": content_type,
            "CacheControl": cache_control,
        }
        html = is_html_file(path)
        if not html:
            put_kwargs["Metadata"] = {"access-control-allow-origin": "*"}
        try:
            put_kwargs["Body"] = path.read_bytes()
            self.s3.put_object(**put_kwargs)
        except (BotoCoreError, ClientError, OSError) as exc:
            logger.error("Failed to upload %s: %s", key, exc)
            return UploadResult(failed=1)
        logger.info(
            "Uploaded: %s (%s, %s%s)",
            key,
            content_type,
            cache_control,
            "" if html else ", CORS: *",
        )
        return UploadResult(uploaded=1)

    def upload_directory(
        self, path: Path, prefix: str = "", immutable_folder: bool = False
    ) -> UploadResult:
        """Upload a file or directory tree depth-first under ``prefix``.

        A child directory named ``_astro`` switches its whole subtree to the
        immutable cache policy.
        """
        if path.is_file():
            return self.upload_file(path, join_key(prefix, path.name), immutable_folder)

        result = UploadResult()
        for child in sorted(path.iterdir()):
            child_key = join_key(prefix, child.name)
            child_immutable = immutable_folder or child.name == IMMUTABLE_FOLDER
            if child.is_dir():
                result += self.upload_directory(child, child_key, child_immutable)
            else:
                result += self.upload_file(child, child_key, child_immutable)
        return result

    # -- deletes ------------------------------------------------------------

    def delete_prefix(self, prefix: str, *, page_size: int | None = None) -> int:
        """Delete every object under ``prefix`` and return how many were removed.

        Each listing page is deleted in parallel. Any failed delete aborts
        the prefix with PrefixDeletionError.
        """
        logger.info("Deleting objects with prefix: %s", prefix)
        deleted = 0
        continuation_token: str | None = None
        try:
            while True:
                list_kwargs: dict[str, Any] = {"Bucket": self.bucket_name, "Prefix": prefix}
                if continuation_token:
                    list_kwargs["ContinuationToken"] = continuation_token
                if page_size:
                    list_kwargs["MaxKeys"] = page_size
                response = self.s3.list_objects_v2(**list_kwargs)

                keys = [obj["Key"] for obj in response.get("Contents", [])]
                if keys:
                    self._delete_keys_parallel(keys)
                    deleted += len(keys)
                    logger.info("Deleted %d objects", len(keys))

                continuation_token = response.get("NextContinuationToken")
                if not continuation_token:
                    break
        except (BotoCoreError, ClientError) as exc:
            logger.error("Failed to delete objects with prefix %s: %s", prefix, exc)
            raise PrefixDeletionError(
                prefix, f"Failed to delete objects with prefix {prefix}: {exc}"
            ) from exc

        logger.info("Total deleted objects: %d", deleted)
        return deleted

    def _delete_keys_parallel(self, keys: Sequence[str]) -> None:
        with ThreadPoolExecutor(max_workers=len(keys)) as pool:
            futures = [
                pool.submit(self.s3.delete_object, Bucket=self.bucket_name, Key=key)
                for key in keys
            ]
            for future in futures:
                future.result()

    def delete_key(self, key: str) -> bool:
        """Best-effort delete of a single root-level object."""
        try:
            self.s3.delete_object(Bucket=self.bucket_name, Key=key)
        except (BotoCoreError, ClientError) as exc:
            logger.warning("Could not delete %s: %s", key, exc)
            return False
        return True

    # -- orchestration ------------------------------------------------------

    def deploy(self, dist_path: Path, s3_path: str) -> DeploySummary:
        """Replace the remote copy of ``dist_path`` under ``s3_path``.

        Upload failures are counted per file while prefix-delete failures
        abort the deploy. The two tiers are deliberately not reconciled.
        """
        dist_path = Path(dist_path)
        logger.info("Starting upload from: %s", dist_path)
        logger.info("Target bucket: %s", self.bucket_name)
        logger.info("S3 path: %s", s3_path)

        if not dist_path.exists():
            raise DeployError(f"Dist folder does not exist: {dist_path}")

        immutable_path = dist_path / IMMUTABLE_FOLDER
        category_path = dist_path / CATEGORY_FOLDER
        immutable_exists = immutable_path.exists()
        category_exists = category_path.exists()
        if not immutable_exists and not category_exists:
            raise DeployError(
                f"Neither {IMMUTABLE_FOLDER} nor {CATEGORY_FOLDER} folder found in: {dist_path}"
            )

        started = time.monotonic()
        base = base_prefix(s3_path)

        root_files: list[Path] = []
        root_folders: list[Path] = []
        for entry in sorted(dist_path.iterdir()):
            if entry.is_file():
                root_files.append(entry)
            elif entry.is_dir() and entry.name not in KNOWN_FOLDERS:
                root_folders.append(entry)

        deleted = 0
        if immutable_exists:
            logger.info("Deleting existing %s folder from S3", IMMUTABLE_FOLDER)
            deleted += self.delete_prefix(f"{base}{IMMUTABLE_FOLDER}/")
        if category_exists:
            logger.info("Deleting existing %s folder from S3", CATEGORY_FOLDER)
            deleted += self.delete_prefix(f"{base}{CATEGORY_FOLDER}/")

        if root_files or root_folders:
            logger.info("Deleting existing root files and folders from S3")
            # DeleteObject succeeds for absent keys, so these are not counted.
            for file_path in root_files:
                self.delete_key(f"{base}{file_path.name}")
            for folder in root_folders:
                deleted += self.delete_prefix(f"{base}{folder.name}/")

        result = UploadResult()
        if root_files:
            logger.info("Uploading root files")
            for file_path in root_files:
                result += self.upload_file(file_path, f"{base}{file_path.name}")

        if root_folders:
            logger.info("Uploading other root folders")
            for folder in root_folders:
                result += self.upload_directory(folder, f"{base}{folder.name}")

        if immutable_exists:
            logger.info("Uploading %s folder with immutable cache control", IMMUTABLE_FOLDER)
            result += self.upload_directory(
                immutable_path, f"{base}{IMMUTABLE_FOLDER}", immutable_folder=True
            )

        if category_exists:
            logger.info("Uploading %s folder as-is", CATEGORY_FOLDER)
            result += self.upload_directory(category_path, f"{base}{CATEGORY_FOLDER}")

        summary = DeploySummary(
            uploaded=result.uploaded,
            failed=result.failed,
            deleted=deleted,
            elapsed_seconds=time.monotonic() - started,
        )
        logger.info("Upload Summary:")
        logger.info("Successfully uploaded: %d files", summary.uploaded)
        logger.info("Failed uploads: %d files", summary.failed)
        logger.info("Total time: %.2fs", summary.elapsed_seconds)
        return summary

    # -- invalidation -------------------------------------------------------

    def create_invalidation(
        self,
        paths: Sequence[str],
        monitor_progress: bool = True,
        *,
        interval: float = POLL_INTERVAL_SECONDS,
        timeout: float = POLL_TIMEOUT_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> str | None:
        """Create one invalidation batch and optionally wait for it.

        Returns the invalidation id, or None when there is nothing to do.
        Errors from CreateInvalidation propagate to the caller.
        """
        if not self.distribution_id:
            logger.warning("No CloudFront distribution ID provided, skipping invalidation")
            return None
        items = [p.strip() for p in paths if p and p.strip()]
        if not items:
            logger.warning("No invalidation paths provided, skipping invalidation")
            return None

        logger.info("Creating CloudFront invalidation for distribution: %s", self.distribution_id)
        logger.info("Paths to invalidate: %s", ", ".join(items))
        response = self.cloudfront.create_invalidation(
            DistributionId=self.distribution_id,
            InvalidationBatch={
                "Paths": {"Quantity": len(items), "Items": items},
                "CallerReference": f"s3-upload-{int(time.time() * 1000)}",
            },
        )
        invalidation = response["Invalidation"]
        invalidation_id = invalidation["Id"]
        status = invalidation.get("Status")
        logger.info("CloudFront invalidation created: %s", invalidation_id)
        logger.info("Initial status: %s", status)

        if monitor_progress and normalise_status(status) != STATUS_COMPLETED:
            result = self.monitor_invalidation(
                invalidation_id, interval=interval, timeout=timeout, sleep=sleep
            )
            if not result.completed:
                logger.warning("Progress monitoring ended. Check AWS Console for final status.")
        return invalidation_id

    def poll_invalidation(
        self,
        invalidation_id: str,
        *,
        interval: float = POLL_INTERVAL_SECONDS,
        timeout: float = POLL_TIMEOUT_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Iterator[InvalidationEvent]:
        """Yield one event per status check until a terminal status or timeout.

        Sleeps only after an in-progress status. Closing the generator stops
        polling before the next check.
        """
        polled = 0.0
        attempt = 0
        while polled < timeout:
            attempt += 1
            response = self.cloudfront.get_invalidation(
                DistributionId=self.distribution_id, Id=invalidation_id
            )
            invalidation = response["Invalidation"]
            batch_paths = invalidation.get("InvalidationBatch", {}).get("Paths", {})
            create_time = invalidation.get("CreateTime")
            event = InvalidationEvent(
                invalidation_id=invalidation_id,
                status=str(invalidation.get("Status", "")),
                create_time=str(create_time) if create_time is not None else None,
                paths=tuple(batch_paths.get("Items", [])),
                attempt=attempt,
            )
            yield event
            if normalise_status(event.status) != STATUS_IN_PROGRESS:
                return
            sleep(interval)
            polled += interval

    def monitor_invalidation(
        self,
        invalidation_id: str,
        *,
        interval: float = POLL_INTERVAL_SECONDS,
        timeout: float = POLL_TIMEOUT_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> MonitorResult:
        logger.info("Monitoring invalidation progress: %s", invalidation_id)
        last: InvalidationEvent | None = None
        try:
            for event in self.poll_invalidation(
                invalidation_id, interval=interval, timeout=timeout, sleep=sleep
            ):
                last = event
                logger.info(
                    "Status: %s | Created: %s | Paths: %s",
                    event.status,
                    event.create_time,
                    ", ".join(event.paths),
                )
                normalised = normalise_status(event.status)
                if normalised == STATUS_COMPLETED:
                    logger.info("Invalidation completed successfully")
                    return MonitorResult(completed=True, status=event.status, checks=event.attempt)
                if normalised == STATUS_IN_PROGRESS:
                    logger.info("Invalidation in progress, checking again in %ss", interval)
                    continue
                logger.warning("Unexpected status: %s", event.status)
                return MonitorResult(completed=False, status=event.status, checks=event.attempt)
        except (BotoCoreError, ClientError, KeyError) as exc:
            logger.error("Failed to monitor invalidation progress: %s", exc)
            return MonitorResult(
                completed=False,
                status=last.status if last else None,
                checks=last.attempt if last else 0,
            )

        logger.warning("Polling timeout reached. Please check invalidation status manually.")
        return MonitorResult(
            completed=False,
            status=last.status if last else None,
            checks=last.attempt if last else 0,
            timed_out=True,
        )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def _load_dotenv_values(directory: Path | None = None) -> dict[str, str]:
    values: dict[str, str] = {}
    root = directory or Path.cwd()
    # .env.local is read first so it takes precedence over .env.
    for filename in _DOTENV_FILENAMES:
        path = root / filename
        if not path.exists():
            continue
        for line in path.read_text(encoding="utf-8").splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith("#") or "=" not in stripped:
                continue
            key, raw = stripped.split("=", 1)
            key = key.strip()
            if key.startswith("export "):
                key = key[len("export ") :].strip()
            value = raw.strip().strip('"').strip("'")
            if key and key not in values:
                values[key] = value
    return values


def load_dotenv(directory: Path | None = None) -> None:
    """Copy dotenv values into os.environ without overriding exported ones."""
    for key, value in _load_dotenv_values(directory).items():
        os.environ.setdefault(key, value)


def require_credentials() -> None:
    missing = [name for name in _REQUIRED_CREDENTIALS if not os.environ.get(name, "").strip()]
    if missing:
        raise CredentialsError(
            f"AWS credentials not found: {', '.join(missing)} must be set "
            "(export them or add them to .env)"
        )


def resolve_region(explicit: str | None) -> str:
    if explicit and explicit.strip():
        return explicit.strip()
    return os.environ.get("AWS_REGION", "").strip() or DEFAULT_REGION


def parse_monitor_progress(raw: str | None) -> bool:
    if raw is None:
        return True
    return raw.strip().lower() != "false"


def split_invalidation_paths(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deploy_static_site.py",
        description="Deploy a static site build to S3 and optionally invalidate CloudFront.",
        epilog=USAGE_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("dist_path", metavar="dist-path")
    parser.add_argument("s3_path", metavar="s3-path")
    parser.add_argument("bucket_name", metavar="bucket-name")
    parser.add_argument("region", nargs="?", default=None)
    parser.add_argument("distribution_id", metavar="distribution-id", nargs="?", default=None)
    parser.add_argument(
        "invalidation_paths", metavar="invalidation-paths", nargs="?", default=None
    )
    parser.add_argument("monitor_progress", metavar="monitor-progress", nargs="?", default=None)
    return parser


def parse_args(argv: Sequence[str]) -> DeployArgs:
    ns, extra = build_parser().parse_known_args(list(argv))
    if extra:
        logger.warning("Ignoring extra arguments: %s", " ".join(extra))
    return DeployArgs(
        dist_path=Path(ns.dist_path),
        s3_path=ns.s3_path,
        bucket_name=ns.bucket_name,
        region=ns.region or None,
        distribution_id=ns.distribution_id or None,
        invalidation_paths=split_invalidation_paths(ns.invalidation_paths),
        monitor_progress=parse_monitor_progress(ns.monitor_progress),
    )


def run(args: DeployArgs) -> int:
    uploader = StaticSiteUploader(
        args.bucket_name,
        region=resolve_region(args.region),
        distribution_id=args.distribution_id,
    )
    try:
        uploader.deploy(args.dist_path, args.s3_path)
    except (DeployError, BotoCoreError, ClientError, OSError) as exc:
        logger.error("Upload failed: %s", exc)
        return 1
    logger.info("Upload completed successfully")

    if args.distribution_id and args.invalidation_paths:
        logger.info("Starting CloudFront invalidation")
        try:
            uploader.create_invalidation(args.invalidation_paths, args.monitor_progress)
        except (BotoCoreError, ClientError, KeyError) as exc:
            logger.warning("CloudFront invalidation failed: %s", exc)
            logger.warning(
                "Upload was successful, but invalidation failed. "
                "You may need to manually invalidate the cache."
            )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint."""
    argv = list(sys.argv[1:] if argv is None else argv)
    if len(argv) < 3:
        build_parser().print_help(sys.stderr)
        return 1
    args = parse_args(argv)

    load_dotenv()
    try:
        require_credentials()
    except CredentialsError as exc:
        logger.error("%s", exc)
        return 1
    return run(args)


if __name__ == "__main__":
    raise SystemExit(main())
