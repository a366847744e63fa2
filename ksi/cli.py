"""Command line front-end: sign, extend and verify files, inspect publications."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence
from pathlib import Path

from pydantic import ValidationError

from ksi.client import KSI
from ksi.core.config import Settings, get_settings
from ksi.core.crypto.hashing import HashAlgorithm
from ksi.core.errors import InvalidArgumentError, KSIError
from ksi.core.logging import configure_logging
from ksi.modules.publications.models import to_epoch
from ksi.modules.publications.service import parse_utc_date
from ksi.modules.signature.models import KSISignature, PublicationData, PublicationRecord
from ksi.modules.verification.policies import POLICIES


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ksi", description="KSI signing and verification.")
    parser.add_argument(
        "--publications-file",
        type=Path,
        default=None,
        help="Read the publications file from this path instead of KSI_PUBLICATIONS_FILE_URL.",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Override KSI_LOG_LEVEL.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    sign = commands.add_parser("sign", help="Sign a file.")
    sign.add_argument("file", type=Path)
    sign.add_argument("-o", "--output", type=Path, help="Signature path, FILE.ksig by default.")
    sign.add_argument("--hash-algorithm", default=None, help="Override KSI_DEFAULT_HASH_ALGORITHM.")

    extend = commands.add_parser("extend", help="Extend a signature to a publication.")
    extend.add_argument("signature", type=Path)
    extend.add_argument(
        "-o", "--output", type=Path, help="Output path, SIGNATURE.extended.ksig by default."
    )
    extend.add_argument("--publication-code", help="Extend to this publication.")

    verify = commands.add_parser("verify", help="Verify a signature.")
    verify.add_argument("signature", type=Path)
    verify.add_argument("--document", type=Path, help="Check the signature covers this file.")
    verify.add_argument("--policy", choices=sorted(POLICIES), default="default")
    verify.add_argument("--publication-code", help="Trusted publication for user verification.")
    verify.add_argument(
        "--extending-allowed",
        action="store_true",
        default=None,
        help="Allow fetching calendar chains during verification.",
    )

    publications = commands.add_parser("publications", help="Show a publication.")
    publications.add_argument(
        "--date",
        help="Show the first publication on or after this YYYY-MM-DD date instead of the latest.",
    )
    return parser


def _publication_summary(record: PublicationRecord) -> dict[str, object]:
    return {
        "publication_time": record.publication_time,
        "published_at": record.publication_data.published_at.isoformat(),
        "published_hash": str(record.published_hash),
        "publication_code": record.publication_data.to_code(),
        "references": list(record.references),
    }


def _signature_summary(signature: KSISignature, path: Path) -> dict[str, object]:
    return {
        "signature": str(path),
        "input_hash": str(signature.input_hash),
        "aggregation_time": signature.aggregation_time,
        "extended": signature.is_extended,
        "identity": [identity.client_id for identity in signature.identity],
    }


def _write_signature(signature: KSISignature, path: Path) -> None:
    with path.open("wb") as sink:
        signature.write_to(sink)


async def _sign(ksi: KSI, args: argparse.Namespace) -> int:
    algorithm = HashAlgorithm.by_name(args.hash_algorithm) if args.hash_algorithm else None
    signature = await ksi.sign(args.file, algorithm=algorithm)
    output = args.output or args.file.with_name(args.file.name + ".ksig")
    _write_signature(signature, output)
    print(json.dumps(_signature_summary(signature, output), indent=2))
    return 0


async def _extend(ksi: KSI, args: argparse.Namespace) -> int:
    signature = await ksi.read(args.signature)
    record = None
    if args.publication_code:
        publications_file = await ksi.get_publications_file()
        record = publications_file.publication_record_by_code(args.publication_code)
        if record is None:
            record = PublicationRecord(PublicationData.from_code(args.publication_code))
    extended = await ksi.extend(signature, record)
    output = args.output or args.signature.with_suffix(".extended.ksig")
    _write_signature(extended, output)
    print(json.dumps(_signature_summary(extended, output), indent=2))
    return 0


async def _verify(ksi: KSI, args: argparse.Namespace) -> int:
    signature = await ksi.read(args.signature)
    document_hash = None
    if args.document is not None:
        document_hash = await ksi.hash(args.document, signature.input_hash.algorithm)
    if args.policy == "user-publication" and not args.publication_code:
        raise InvalidArgumentError("--policy user-publication requires --publication-code")

    result = await ksi.verify(
        signature,
        POLICIES[args.policy](),
        document_hash=document_hash,
        user_publication=args.publication_code,
        extending_allowed=args.extending_allowed,
    )
    print(result.model_dump_json(indent=2))
    if not result.success:
        print(f"{result.error_code}: {result.message}", file=sys.stderr)
        return 1
    return 0


async def _publications(ksi: KSI, args: argparse.Namespace) -> int:
    publications_file = await ksi.get_publications_file()
    if args.date:
        record = publications_file.publication_record_at_or_after(
            to_epoch(parse_utc_date(args.date))
        )
    else:
        record = publications_file.latest_publication()
    if record is None:
        raise InvalidArgumentError("No matching publication in the publications file")
    print(json.dumps(_publication_summary(record), indent=2))
    return 0


_ARGUMENT_ERROR = InvalidArgumentError("").error_code

_COMMANDS = {
    "sign": _sign,
    "extend": _extend,
    "verify": _verify,
    "publications": _publications,
}


def _load_settings(args: argparse.Namespace) -> Settings:
    settings = get_settings()
    if args.log_level:
        settings = settings.model_copy(update={"log_level": args.log_level})
    return settings


async def _main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        settings = _load_settings(args)
    except ValidationError as exc:
        print(f"{_ARGUMENT_ERROR}: {exc}", file=sys.stderr)
        return 2
    configure_logging(settings)

    try:
        async with KSI.from_settings(settings, publications_file=args.publications_file) as ksi:
            return await _COMMANDS[args.command](ksi, args)
    except KSIError as exc:
        print(f"{exc.error_code}: {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"{_ARGUMENT_ERROR}: {exc}", file=sys.stderr)
        return 1


def main(argv: Sequence[str] | None = None) -> int:
    return asyncio.run(_main(argv))


if __name__ == "__main__":
    raise SystemExit(main())
