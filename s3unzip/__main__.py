# s3unzip/__main__.py
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

from s3unzip.core.logging_config import logger, setup_logging
from s3unzip.core.settings import Settings
from s3unzip.errors import S3UnzipError
from s3unzip.infra.retry import RetryPolicy
from s3unzip.infra.s3_client import build_s3_client
from s3unzip.services.storage import S3ObjectStore
from s3unzip.unzip.manager import S3UnzipManager
from s3unzip.unzip.strategy import NoSplitUnzipStrategy, SplitTextUnzipStrategy


def build_parser(cfg: Settings) -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="s3unzip", description="Unzip S3 objects into S3 without local disk")
    p.add_argument("bucket")
    p.add_argument("input_prefix", help="key prefix of the input archives")
    p.add_argument("output_prefix", help="key prefix for the unzipped objects")

    select = p.add_mutually_exclusive_group()
    select.add_argument("--key", help="unzip exactly this object (single-object mode)")
    select.add_argument("--key-containing", help="only keys containing this substring")
    select.add_argument("--key-matching", help="only keys fully matching this regex")

    p.add_argument("--split", action="store_true", help="shard text entries on line boundaries")
    p.add_argument("--file-bytes-limit", type=int, default=cfg.file_bytes_limit)
    p.add_argument("--header", action="store_true", default=cfg.header, help="repeat the first line in every shard")
    p.add_argument("--delimiter", default=cfg.delimiter)
    p.add_argument("--part-bytes", type=int, default=cfg.upload_part_bytes_limit)
    p.add_argument("--threads", type=int, default=cfg.thread_count)
    p.add_argument("--queue-size", type=int, default=cfg.queue_size)
    p.add_argument(
        "--content-type", action="append", dest="content_types", default=None,
        help="allowed input Content-Type (repeatable); default accepts all",
    )
    p.add_argument("--continue-on-error", action="store_true", default=not cfg.fail_fast)
    p.add_argument("--log-level", default=cfg.log_level)
    return p


def main(argv=None) -> int:
    cfg = Settings()
    args = build_parser(cfg).parse_args(argv)
    setup_logging(args.log_level)

    upload_cfg = cfg.multipart_config().with_(
        upload_part_bytes_limit=args.part_bytes,
        thread_count=args.threads,
        queue_size=args.queue_size,
    )
    if args.split:
        strategy = SplitTextUnzipStrategy(
            config=upload_cfg,
            file_bytes_limit=args.file_bytes_limit,
            header=args.header,
            delimiter=args.delimiter,
        )
    else:
        strategy = NoSplitUnzipStrategy(config=upload_cfg)

    # Ctrl-C / SIGTERM: lopende upload afbreken in plaats van half laten staan
    cancel = threading.Event()

    def _cancel(signum, _frame):
        logging.getLogger(__name__).warning("Signal %s received, cancelling", signum)
        cancel.set()

    signal.signal(signal.SIGTERM, _cancel)
    signal.signal(signal.SIGINT, _cancel)

    store = S3ObjectStore(build_s3_client(cfg), retry=RetryPolicy(attempts=cfg.S3_RETRY_ATTEMPTS))
    manager = S3UnzipManager(
        store=store,
        strategy=strategy,
        content_types=tuple(args.content_types or cfg.content_types) or None,
        fail_fast=not args.continue_on_error,
        read_chunk_bytes=cfg.read_chunk_bytes,
        cancel_event=cancel,
    )

    try:
        if args.key:
            outputs = manager.unzip_object(args.bucket, args.key, args.output_prefix)
            logger.info("unzip_done", key=args.key, outputs=len(outputs))
            return 0
        if args.key_containing:
            result = manager.unzip_objects_key_containing(
                args.bucket, args.input_prefix, args.output_prefix, args.key_containing
            )
        elif args.key_matching:
            result = manager.unzip_objects_key_matching(
                args.bucket, args.input_prefix, args.output_prefix, args.key_matching
            )
        else:
            result = manager.unzip_objects(args.bucket, args.input_prefix, args.output_prefix)
    except S3UnzipError as e:
        logger.error("unzip_failed", error=str(e), type=type(e).__name__)
        return 1

    logger.info(
        "batch_done",
        processed=len(result.processed),
        skipped=len(result.skipped),
        failed=len(result.failed),
        outputs=len(result.outputs),
    )
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
