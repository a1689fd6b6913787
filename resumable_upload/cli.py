"""
Command-line client for chunked, resumable uploads.

Usage:
    resumable-upload upload FILE [--meta key=value ...] [--token TOKEN]
    resumable-upload resume SESSION_ID [--file PATH]
    resumable-upload status SESSION_ID
    resumable-upload list
    resumable-upload cancel SESSION_ID
    resumable-upload serve
"""
import argparse
import asyncio
import logging
import sys
import time
from typing import Dict, List, Optional

from tabulate import tabulate

from .core.config import settings
from .core.exceptions import UploadCancelledError, UploadError, UploadFailedError
from .services.resume_store import ResumeStore
from .services.transport import UploadApiClient
from .services.uploader import ChunkedUploader, UploadHandle


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def parse_metadata(pairs: Optional[List[str]]) -> Dict[str, str]:
    metadata = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"Metadata must be key=value, got {pair!r}")
        metadata[key.strip()] = value.strip()
    return metadata


def build_uploader(args: argparse.Namespace) -> ChunkedUploader:
    return ChunkedUploader(
        api=UploadApiClient(api_url=args.api_url),
        store=ResumeStore(db_url=args.db_url),
        concurrency=getattr(args, "concurrency", settings.MAX_CONCURRENCY),
        chunk_size=getattr(args, "chunk_size", settings.CHUNK_SIZE),
    )


async def follow(handle: UploadHandle, file_size: int) -> int:
    """Print progress events until the upload ends; return the exit code."""
    start_time = time.time()
    async for event in handle.events():
        if event.current_chunk is not None:
            retried = f" after {event.retries} retries" if event.retries else ""
            print(f"  ✓ Chunk {event.current_chunk + 1}/{event.total_chunks} uploaded "
                  f"({event.progress:.1f}%){retried}")
        elif not event.is_terminal:
            print(f"Session {event.session_id}: {event.status} "
                  f"({event.completed_chunks}/{event.total_chunks} chunks)")

    try:
        result = await handle.wait()
    except UploadCancelledError:
        print(f"\n🛑 Upload {handle.session_id} cancelled")
        return 130
    except UploadFailedError as e:
        print(f"\n✗ Upload failed: {e}")
        if e.failed_chunks:
            print(f"  Failed chunks: {sorted(e.failed_chunks)} ({e.error_class})")
        print(f"  Resume with: resumable-upload resume {handle.session_id}")
        return 1

    upload_time = max(time.time() - start_time, 1e-6)
    print("\n✓ Upload completed successfully!")
    print(f"  Artifact: {result.artifact_id}")
    print(f"  Location: {result.location} ({result.storage})")
    print(f"  Time: {upload_time:.2f} seconds")
    print(f"  Speed: {file_size / upload_time / (1024 * 1024):.2f} MB/s")
    return 0


async def cmd_upload(args: argparse.Namespace) -> int:
    uploader = build_uploader(args)
    try:
        handle = await uploader.start_upload(
            args.file,
            metadata=parse_metadata(args.meta),
            destination_token=args.token,
            content_type=args.content_type,
        )
        return await follow(handle, handle.session.file_size)
    finally:
        await uploader.aclose()


async def cmd_resume(args: argparse.Namespace) -> int:
    uploader = build_uploader(args)
    try:
        handle = await uploader.resume(args.session_id, file_path=args.file)
        print(f"Resuming upload session: {args.session_id}")
        print(f"Already completed: {len(handle.session.uploaded_chunks)}/{handle.session.total_chunks} chunks")
        return await follow(handle, handle.session.file_size)
    finally:
        await uploader.aclose()


async def cmd_status(args: argparse.Namespace) -> int:
    uploader = build_uploader(args)
    try:
        status = await uploader.resume_status(args.session_id)
    finally:
        await uploader.aclose()

    print(tabulate([
        ["Session", status.session_id],
        ["Resumable", "yes" if status.possible else "no"],
        ["Reason", status.reason],
        ["Uploaded", f"{status.uploaded_chunks}/{status.total_chunks}"],
        ["Missing", ", ".join(map(str, status.missing_chunks[:20])) or "-"],
    ], tablefmt="grid"))
    return 0 if status.possible else 1


async def cmd_list(args: argparse.Namespace) -> int:
    store = ResumeStore(db_url=args.db_url)
    rows = [
        [r.session_id, r.file_name, f"{r.file_size / (1024 * 1024):.2f} MB",
         r.total_chunks, r.status, r.updated_at.isoformat(timespec="seconds")]
        for r in store.list()
    ]
    if not rows:
        print("No resumable uploads.")
        return 0
    print(tabulate(rows, headers=["Session", "File", "Size", "Chunks", "Status", "Updated"], tablefmt="grid"))
    return 0


async def cmd_cancel(args: argparse.Namespace) -> int:
    uploader = build_uploader(args)
    try:
        await uploader.cancel(args.session_id)
    finally:
        await uploader.aclose()
    print(f"🛑 Cancelled upload session {args.session_id}")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    from .main import run

    run()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="resumable-upload", description="Chunked, resumable file uploads")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--api-url", default=settings.API_BASE_URL, help="Upload backend base URL")
    parser.add_argument("--db-url", default=settings.RESUME_DB_URL, help="Resume state database URL")

    sub = parser.add_subparsers(dest="command", required=True)

    upload = sub.add_parser("upload", help="Upload a file")
    upload.add_argument("file")
    upload.add_argument("--meta", action="append", metavar="KEY=VALUE", help="Caller metadata (repeatable)")
    upload.add_argument("--token", help="Destination storage credential")
    upload.add_argument("--content-type", help="Override the guessed content type")
    upload.add_argument("--concurrency", type=int, default=settings.MAX_CONCURRENCY)
    upload.add_argument("--chunk-size", type=int, default=settings.CHUNK_SIZE)

    resume = sub.add_parser("resume", help="Resume an interrupted upload")
    resume.add_argument("session_id")
    resume.add_argument("--file", help="Source file, if it moved since the upload started")
    resume.add_argument("--concurrency", type=int, default=settings.MAX_CONCURRENCY)

    status = sub.add_parser("status", help="Check whether an upload can be resumed")
    status.add_argument("session_id")

    sub.add_parser("list", help="List resumable uploads")

    cancel = sub.add_parser("cancel", help="Cancel an upload")
    cancel.add_argument("session_id")

    sub.add_parser("serve", help="Run the reference upload backend")
    return parser


COMMANDS = {
    "upload": cmd_upload,
    "resume": cmd_resume,
    "status": cmd_status,
    "list": cmd_list,
    "cancel": cmd_cancel,
}


def main(argv: Optional[List[str]] = None) -> int:
    """CLI for the chunked uploader."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if args.command == "serve":
        return cmd_serve(args)

    try:
        return asyncio.run(COMMANDS[args.command](args))
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
    except UploadError as e:
        print(f"\n✗ {type(e).__name__}: {e}")
        return 1
    except KeyboardInterrupt:
        print("\n⚠ Interrupted. Resume later with: resumable-upload resume <session_id>")
        return 130


if __name__ == "__main__":
    sys.exit(main())
