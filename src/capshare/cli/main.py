#!/usr/bin/env python3
"""
capshare CLI - Share encrypted files with time-bounded, revocable grants.

Commands:
  capshare keygen                      Generate an actor key
  capshare upload <path>               Encrypt, store and create a capability
  capshare download <capability>       Restore a file you have access to
  capshare grant <capability> <addr>   Allow an address to download
  capshare revoke <capability> <addr>  Remove an address's access
  capshare check <capability>          Ask whether an address has access

Endpoints and modes come from CAPSHARE_* environment variables; the actor
key from --key-file or CAPSHARE_PRIVATE_KEY. Output is JSON.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path
from typing import Any

from ..access import AccessEvaluator
from ..config import EndpointConfig, TransferConfig
from ..defaults import NEVER_EXPIRES
from ..errors import TransferError
from ..ledger.client import JsonRpcLedgerClient
from ..ledger.memory import system_clock
from ..ledger.transactions import CapabilityTransactionBuilder, GrantRequest
from ..signing import Ed25519Signer
from ..storage.blob import HttpBlobStore
from ..threshold.client import ThresholdClient
from ..threshold.keyservers import HttpKeyServer
from ..transfer.download import DownloadOrchestrator
from ..transfer.sharing import AccessManager
from ..transfer.upload import UploadOrchestrator, UploadRequest

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_TRANSFER_ERROR = 1
EXIT_USAGE = 2


class UsageError(Exception):
    """The command cannot run as configured."""


# ============================================================================
# Wiring
# ============================================================================


def load_signer(key_file: str | None, environ: Mapping[str, str] | None = None) -> Ed25519Signer | None:
    """Load the actor key from a seed file or ``CAPSHARE_PRIVATE_KEY``."""
    env = os.environ if environ is None else environ
    try:
        if key_file:
            return Ed25519Signer.from_seed_hex(Path(key_file).read_text().strip())
        seed = env.get("CAPSHARE_PRIVATE_KEY")
        return Ed25519Signer.from_seed_hex(seed) if seed else None
    except (OSError, ValueError) as e:
        raise UsageError(f"Could not load actor key: {e}") from e


def require_signer(signer: Ed25519Signer | None) -> Ed25519Signer:
    if signer is None:
        raise UsageError("An actor key is required (--key-file or CAPSHARE_PRIVATE_KEY)")
    return signer


def build_ledger(endpoints: EndpointConfig) -> JsonRpcLedgerClient:
    if not endpoints.ledger_url:
        raise UsageError("CAPSHARE_LEDGER_URL is not set")
    return JsonRpcLedgerClient(endpoints.ledger_url)


def build_blob_store(config: TransferConfig, endpoints: EndpointConfig) -> HttpBlobStore | None:
    if config.skip_remote_storage:
        return None
    if not endpoints.blob_publisher_url or not endpoints.blob_aggregator_url:
        raise UsageError("CAPSHARE_BLOB_PUBLISHER and CAPSHARE_BLOB_AGGREGATOR must be set")
    return HttpBlobStore(endpoints.blob_publisher_url, endpoints.blob_aggregator_url)


def build_threshold_client(config: TransferConfig, endpoints: EndpointConfig) -> ThresholdClient | None:
    if config.skip_encryption:
        return None
    servers = [HttpKeyServer(info) for info in endpoints.key_servers if info.url]
    if len(servers) < config.threshold:
        raise UsageError(
            f"CAPSHARE_KEY_SERVERS lists {len(servers)} reachable key servers; threshold is {config.threshold}"
        )
    return ThresholdClient(servers, threshold=config.threshold, program_id=config.program_id)


def parse_grant(value: str) -> GrantRequest | str:
    """``ADDRESS`` or ``ADDRESS:EXPIRES_AT_MS``."""
    address, _, expires = value.partition(":")
    try:
        if expires:
            return GrantRequest(address, int(expires))
        GrantRequest(address)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid grant {value!r}: {e}") from e
    return address


def resolve_expiry(expires_at: int | None, ttl_seconds: int | None) -> int:
    if expires_at is not None and ttl_seconds is not None:
        raise UsageError("Use either --expires-at or --ttl, not both")
    if ttl_seconds is not None:
        return system_clock() + ttl_seconds * 1000
    return NEVER_EXPIRES if expires_at is None else expires_at


def emit(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2))


# ============================================================================
# Commands
# ============================================================================


def cmd_keygen(args: argparse.Namespace) -> int:
    """Generate an actor key."""
    signer = Ed25519Signer.generate()
    if args.out:
        path = Path(args.out)
        path.write_text(signer.seed_hex() + "\n")
        path.chmod(0o600)
        emit({"address": signer.address, "key_file": str(path)})
    else:
        emit({"address": signer.address, "private_key": signer.seed_hex()})
    return EXIT_OK


async def cmd_upload(args: argparse.Namespace) -> int:
    """Upload a file and create its capability."""
    config = TransferConfig.from_env()
    endpoints = EndpointConfig.from_env()
    signer = require_signer(load_signer(args.key_file))
    path = Path(args.path)
    try:
        data = path.read_bytes()
    except OSError as e:
        raise UsageError(f"Cannot read {path}: {e}") from e

    uploader = UploadOrchestrator(
        build_ledger(endpoints),
        signer,
        config,
        blob_store=build_blob_store(config, endpoints),
        threshold_client=build_threshold_client(config, endpoints),
    )
    result = await uploader.upload(
        UploadRequest(
            name=args.name or path.name,
            data=data,
            mime_type=args.mime_type,
            is_public=args.public,
            grants=args.grant or [],
        ),
        on_progress=lambda percent, message: logger.info(f"[{percent:3d}%] {message}"),
    )
    emit({**result.to_dict(), "link": result.link(endpoints.base_url)})
    return EXIT_OK


async def cmd_download(args: argparse.Namespace) -> int:
    """Download a file as the configured actor."""
    config = TransferConfig.from_env()
    endpoints = EndpointConfig.from_env()
    signer = load_signer(args.key_file)

    downloader = DownloadOrchestrator(
        build_ledger(endpoints),
        config,
        blob_store=build_blob_store(config, endpoints),
        threshold_client=build_threshold_client(config, endpoints),
    )
    result = await downloader.download(args.capability_id, signer)
    try:
        saved = result.save(args.out)
    except OSError as e:
        raise UsageError(f"Cannot save to {args.out}: {e}") from e
    emit({"capability_id": result.capability_id, "file": result.header.to_dict(), "saved_to": str(saved), "mode": result.mode})
    return EXIT_OK


async def cmd_grant(args: argparse.Namespace) -> int:
    """Grant an address access to a capability."""
    config = TransferConfig.from_env()
    endpoints = EndpointConfig.from_env()
    signer = require_signer(load_signer(args.key_file))
    expires_at = resolve_expiry(args.expires_at, args.ttl)

    manager = AccessManager(
        build_ledger(endpoints), signer, CapabilityTransactionBuilder(program_id=config.program_id)
    )
    effects = await manager.grant(args.capability_id, args.address, expires_at)
    emit({"capability_id": args.capability_id, "address": args.address, "expires_at": expires_at, "digest": effects.digest})
    return EXIT_OK


async def cmd_revoke(args: argparse.Namespace) -> int:
    """Revoke an address's access to a capability."""
    config = TransferConfig.from_env()
    endpoints = EndpointConfig.from_env()
    signer = require_signer(load_signer(args.key_file))

    manager = AccessManager(
        build_ledger(endpoints), signer, CapabilityTransactionBuilder(program_id=config.program_id)
    )
    effects = await manager.revoke(args.capability_id, args.address)
    emit({"capability_id": args.capability_id, "address": args.address, "revoked": True, "digest": effects.digest})
    return EXIT_OK


async def cmd_check(args: argparse.Namespace) -> int:
    """Report whether an address may download a capability's file."""
    config = TransferConfig.from_env()
    endpoints = EndpointConfig.from_env()
    address = args.address
    if address is None:
        signer = load_signer(args.key_file)
        address = signer.address if signer else None

    evaluator = AccessEvaluator(build_ledger(endpoints), CapabilityTransactionBuilder(program_id=config.program_id))
    allowed = await evaluator.evaluate(args.capability_id, address)
    emit({"capability_id": args.capability_id, "address": address, "allowed": allowed})
    return EXIT_OK


def run_command(handler: Callable[[argparse.Namespace], Awaitable[int]], args: argparse.Namespace) -> int:
    """Run an async command and map failures to exit codes."""
    try:
        return asyncio.run(handler(args))
    except (UsageError, ValueError) as e:
        print(json.dumps({"error": str(e), "category": "usage"}), file=sys.stderr)
        return EXIT_USAGE
    except TransferError as e:
        print(
            json.dumps({"error": str(e), "category": str(e.category), "retryable": e.retryable}),
            file=sys.stderr,
        )
        return EXIT_TRANSFER_ERROR


# ============================================================================
# Main Entry Point
# ============================================================================


def app() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="capshare",
        description="Share encrypted files with time-bounded, revocable grants",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  capshare keygen --out alice.key
  capshare upload report.pdf --grant 0xb0b --key-file alice.key
  capshare grant <capability> 0xc4201 --ttl 600 --key-file alice.key
  capshare download <capability> --out ./downloads --key-file bob.key
        """,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--key-file", "-k", help="File holding the actor's hex seed")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # keygen
    keygen_parser = subparsers.add_parser("keygen", help="Generate an actor key")
    keygen_parser.add_argument("--out", "-o", help="Write the seed to this file instead of printing it")

    # upload
    upload_parser = subparsers.add_parser("upload", help="Upload a file")
    upload_parser.add_argument("path", help="File to upload")
    upload_parser.add_argument("--name", help="File name to record (defaults to the path's name)")
    upload_parser.add_argument("--mime-type", help="MIME type (guessed from the name by default)")
    upload_parser.add_argument("--public", action="store_true", help="Anyone may download")
    upload_parser.add_argument(
        "--grant", "-g", action="append", type=parse_grant,
        help="ADDRESS or ADDRESS:EXPIRES_AT_MS allowed to download (repeatable)",
    )

    # download
    download_parser = subparsers.add_parser("download", help="Download a file")
    download_parser.add_argument("capability_id", help="Capability object id")
    download_parser.add_argument("--out", "-o", default=".", help="Directory to save into")

    # grant
    grant_parser = subparsers.add_parser("grant", help="Grant download access")
    grant_parser.add_argument("capability_id", help="Capability object id")
    grant_parser.add_argument("address", help="Address to grant")
    grant_parser.add_argument("--expires-at", type=int, help="Absolute expiry in ledger milliseconds")
    grant_parser.add_argument("--ttl", type=int, help="Expire this many seconds from now")

    # revoke
    revoke_parser = subparsers.add_parser("revoke", help="Revoke download access")
    revoke_parser.add_argument("capability_id", help="Capability object id")
    revoke_parser.add_argument("address", help="Address to revoke")

    # check
    check_parser = subparsers.add_parser("check", help="Check download access")
    check_parser.add_argument("capability_id", help="Capability object id")
    check_parser.add_argument("--address", "-a", help="Address to check (defaults to the actor)")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = app()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command == "keygen":
        return cmd_keygen(args)

    commands = {
        "upload": cmd_upload,
        "download": cmd_download,
        "grant": cmd_grant,
        "revoke": cmd_revoke,
        "check": cmd_check,
    }

    handler = commands.get(args.command)
    if handler:
        return run_command(handler, args)

    parser.print_help()
    return EXIT_USAGE


if __name__ == "__main__":
    sys.exit(main())
