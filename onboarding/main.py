import argparse
import asyncio
import logging
from pathlib import Path

from onboarding.bulk_service import RESULT_FORMATS, BulkOnboardingService
from onboarding.clients import build_clients
from onboarding.config import Settings, get_settings
from onboarding.context import DedupMode
from onboarding.database import build_session_factory
from onboarding.errors import OnboardingError
from onboarding.records import ingest_file, render_template, write_text
from onboarding.scheduler import start_scheduler
from onboarding.schemas import BatchOptions, OperationStatus


logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Bulk farmer onboarding")
    subparsers = parser.add_subparsers(dest="command", required=True)

    submit_parser = subparsers.add_parser("submit", help="submit a CSV or JSON file of farmer records")
    submit_parser.add_argument("file", help="path to the input file")
    submit_parser.add_argument("--org", required=True, help="organization the farmers are onboarded into")
    submit_parser.add_argument("--user", required=True, help="user submitting the batch")
    submit_parser.add_argument("--format", choices=["csv", "json"], help="input format (default: from file suffix)")
    submit_parser.add_argument("--agent-id", help="field agent to assign to every farmer")
    submit_parser.add_argument(
        "--dedup-mode",
        default=DedupMode.SKIP.value,
        choices=[mode.value for mode in DedupMode],
        help="what to do when a farmer with the same phone already exists",
    )
    submit_parser.add_argument("--max-concurrency", type=int, help="number of concurrent workers")
    submit_parser.add_argument("--validate-only", action="store_true", help="check the file without onboarding")

    for name, help_text in (
        ("status", "show progress of a bulk operation"),
        ("cancel", "cancel a bulk operation"),
        ("failed", "list failed records of a bulk operation"),
        ("retry", "retry failed records of a bulk operation"),
    ):
        command_parser = subparsers.add_parser(name, help=help_text)
        command_parser.add_argument("operation_id")

    results_parser = subparsers.add_parser("results", help="write the per-record results file")
    results_parser.add_argument("operation_id")
    results_parser.add_argument("--format", default="csv", choices=list(RESULT_FORMATS))
    results_parser.add_argument("--output", help="output path (default: OUTPUT_DIR/results/<id>.<format>)")

    template_parser = subparsers.add_parser("template", help="print an upload template")
    template_parser.add_argument("--format", default="csv", choices=["csv", "json"])
    template_parser.add_argument("--no-example", action="store_true", help="omit the sample row")
    template_parser.add_argument("--output", help="write to this path instead of stdout")

    schedule_parser = subparsers.add_parser("schedule", help="start the stale-operation sweeper")
    schedule_parser.add_argument("--run-now", action="store_true", help="also sweep once immediately")

    return parser.parse_args()


def _build_service(settings: Settings) -> BulkOnboardingService:
    accounts, linkage = build_clients(settings)
    return BulkOnboardingService(
        settings,
        build_session_factory(settings.database_url),
        accounts=accounts,
        linkage=linkage,
    )


async def _with_clients(service: BulkOnboardingService, coro_factory):
    async with service.accounts, service.linkage:
        return await coro_factory()


def _submit(args: argparse.Namespace, settings: Settings) -> int:
    service = _build_service(settings)
    records, input_format = ingest_file(Path(args.file), args.format, settings.max_records)

    if args.validate_only:
        report = service.validate_batch(records)
        print(f"total={report.total_records} valid={report.valid_records} invalid={len(report.errors)}")
        for error in report.errors:
            print(f"record_index={error.record_index} field={error.field} code={error.code} reason={error.reason}")
        return 0 if report.is_valid else 1

    options = BatchOptions(
        dedup_mode=args.dedup_mode,
        agent_id=args.agent_id,
        max_concurrency=args.max_concurrency,
    )
    result = asyncio.run(
        _with_clients(
            service,
            lambda: service.submit_batch(
                records,
                org_id=args.org,
                user_id=args.user,
                input_format=input_format,
                options=options,
            ),
        )
    )
    print(
        "operation_id={op} status={status} total={total} successful={ok} failed={failed} skipped={skipped}".format(
            op=result.operation_id,
            status=result.status,
            total=result.total_records,
            ok=result.successful_records,
            failed=result.failed_records,
            skipped=result.skipped_records,
        )
    )
    return 1 if result.status == OperationStatus.FAILED.value else 0


def _print_status(service: BulkOnboardingService, operation_id: str) -> None:
    view = service.get_status(operation_id)
    errors = ",".join(f"{code}:{count}" for code, count in view.error_summary.items()) or "-"
    print(
        "operation_id={op} status={status} total={total} processed={processed} successful={ok} failed={failed} "
        "skipped={skipped} progress={progress} retry_passes={passes} can_retry={can_retry} errors={errors}".format(
            op=view.operation_id,
            status=view.status,
            total=view.total_records,
            processed=view.processed_records,
            ok=view.successful_records,
            failed=view.failed_records,
            skipped=view.skipped_records,
            progress=view.progress_percentage,
            passes=view.retry_passes,
            can_retry=view.can_retry,
            errors=errors,
        )
    )


def run_command(args: argparse.Namespace, settings: Settings) -> int:
    if args.command == "submit":
        return _submit(args, settings)
    if args.command == "template":
        content = render_template(args.format, include_example=not args.no_example)
        if args.output:
            write_text(Path(args.output), content)
        else:
            print(content, end="")
        return 0

    service = _build_service(settings)
    if args.command == "status":
        _print_status(service, args.operation_id)
    elif args.command == "cancel":
        service.cancel_operation(args.operation_id)
        _print_status(service, args.operation_id)
    elif args.command == "failed":
        for row in service.failed_records(args.operation_id):
            print(
                "record_index={record_index} stage={stage_name} code={error_code} retryable={retryable} "
                "retry_count={retry_count} error={error_message}".format(**row)
            )
    elif args.command == "retry":
        result = asyncio.run(_with_clients(service, lambda: service.retry_failed_records(args.operation_id)))
        print(
            f"operation_id={result.operation_id} retried={result.retried} status={result.status} "
            f"successful={result.successful_records} failed={result.failed_records}"
        )
    elif args.command == "results":
        output = Path(args.output) if args.output else None
        path = service.write_results_file(args.operation_id, args.format, output)
        print(f"operation_id={args.operation_id} results={path}")
    return 0


def main() -> None:
    args = parse_args()
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.command == "schedule":
        start_scheduler(settings, build_session_factory(settings.database_url), run_now=args.run_now)
        return

    try:
        exit_code = run_command(args, settings)
    except (OnboardingError, FileNotFoundError) as exc:
        logger.error("command failed", extra={"command": args.command, "error": str(exc)})
        code = getattr(exc, "code", "ERROR")
        print(f"status=error code={code} error={exc}")
        raise SystemExit(1) from exc

    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
