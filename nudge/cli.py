"""
Command-line driver for nudges.

Consent opens in the default browser; the landing step must be served by the
API process (`uvicorn nudge.main:app`) against the same Redis.

    python -m nudge.cli send --owner u1 --target-id acme --target-name Acme \
        --email hr@acme.example --subject "Following up" --body-file note.txt
    python -m nudge.cli batch --owner u1 --targets targets.json \
        --subject "Following up with {target_name}" --body-file note.txt
    python -m nudge.cli quota --owner u1
    python -m nudge.cli keygen
"""

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path

from nudge.config import settings
from nudge.infrastructure.observability.logging import get_logger, setup_logging
from nudge.models.domain.nudge_domain import BatchProgress, NudgeTarget, OwnerProfile
from nudge.services.consent.coordinator import ConsentFlowError
from nudge.services.factory import NudgeServices, build_services
from nudge.services.infrastructure.encryption_service import generate_encryption_key
from nudge.services.infrastructure.redis_client import RedisClient

logger = get_logger(__name__)


def _print_progress(progress: BatchProgress) -> None:
    print(f"[{progress.current}/{progress.total}] {progress.target_name}: {progress.status}")


def _load_targets(path: str) -> list[NudgeTarget]:
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    return [NudgeTarget.model_validate(item) for item in raw]


def _template_composer(subject: str, body: str):
    # Plain replacement: HTML bodies may contain literal braces
    def compose(target: NudgeTarget) -> tuple[str, str]:
        return (
            subject.replace("{target_name}", target.target_name),
            body.replace("{target_name}", target.target_name),
        )

    return compose


async def _send(services: NudgeServices, args) -> int:
    owner = OwnerProfile(owner_id=args.owner, email=args.owner_email)
    target = NudgeTarget(target_id=args.target_id, target_name=args.target_name, email=args.email)
    body = Path(args.body_file).read_text(encoding="utf-8")

    try:
        outcome = await services.nudges.send_single_nudge(
            owner, target, args.subject, body, on_progress=_print_progress
        )
    except ConsentFlowError as e:
        print(f"Gmail sign-in failed: {e}")
        return 1

    print(outcome.user_message)
    return 0 if outcome.status == "sent" else 1


async def _batch(services: NudgeServices, args) -> int:
    owner = OwnerProfile(owner_id=args.owner, email=args.owner_email)
    targets = _load_targets(args.targets)
    body = Path(args.body_file).read_text(encoding="utf-8")

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    try:
        result = await services.batch.run(
            owner,
            targets,
            _template_composer(args.subject, body),
            on_progress=_print_progress,
            cancel_event=cancel_event,
        )
    finally:
        loop.remove_signal_handler(signal.SIGINT)

    print(result.summary())
    for error in result.errors:
        print(f"  {error.target_name}: {error.error}")
    return 0 if result.failed == 0 else 1


async def _quota(services: NudgeServices, args) -> int:
    status = await services.nudges.quota_status(args.owner)
    print(f"{status.used}/{status.limit} sent today, {status.remaining} remaining")
    print(f"Resets at {status.reset_at.isoformat()}")
    return 0


async def _history(services: NudgeServices, args) -> int:
    records = await services.nudges.history(args.owner)
    if not records:
        print("No nudges sent yet")
    for record in records:
        print(
            f"{record.last_sent_at.isoformat()}  {record.target_name or record.target_id}"
            f"  ({record.send_count} sent)"
        )
    return 0


async def _unsubscribe(services: NudgeServices, args) -> int:
    await services.nudges.unsubscribe(args.address, source="cli")
    print(f"{args.address} will no longer receive nudges")
    return 0


COMMANDS = {
    "send": _send,
    "batch": _batch,
    "quota": _quota,
    "history": _history,
    "unsubscribe": _unsubscribe,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nudge", description="Send nudges through Gmail")
    commands = parser.add_subparsers(dest="command", required=True)

    send = commands.add_parser("send", help="Send one nudge")
    send.add_argument("--owner", required=True)
    send.add_argument("--owner-email")
    send.add_argument("--target-id", required=True)
    send.add_argument("--target-name", required=True)
    send.add_argument("--email", required=True, help="Recipient, or comma-joined recipients")
    send.add_argument("--subject", required=True)
    send.add_argument("--body-file", required=True)

    batch = commands.add_parser("batch", help="Nudge a list of targets in order")
    batch.add_argument("--owner", required=True)
    batch.add_argument("--owner-email")
    batch.add_argument("--targets", required=True, help="JSON list of {target_id, target_name, email}")
    batch.add_argument("--subject", required=True, help="Template; {target_name} is substituted")
    batch.add_argument("--body-file", required=True, help="Template file; {target_name} is substituted")

    for name in ("quota", "history"):
        sub = commands.add_parser(name)
        sub.add_argument("--owner", required=True)

    unsubscribe = commands.add_parser("unsubscribe", help="Suppress an address")
    unsubscribe.add_argument("--address", required=True)

    commands.add_parser("keygen", help="Print a new ENCRYPTION_KEY")

    return parser


async def run_command(args) -> int:
    redis_client = RedisClient()
    await redis_client.initialize()
    try:
        services = build_services(redis_client)
        return await COMMANDS[args.command](services, args)
    finally:
        await redis_client.close()


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL)
    args = build_parser().parse_args(argv)
    if args.command == "keygen":
        # No Redis or Google settings needed to mint a key
        print(generate_encryption_key())
        sys.exit(0)
    logger.info("Running nudge command", command=args.command)
    sys.exit(asyncio.run(run_command(args)))


if __name__ == "__main__":
    main()
