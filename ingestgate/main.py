import argparse
import asyncio
from datetime import date
import json
import logging

from ingestgate.config import Settings, get_settings, require_runtime_config
from ingestgate.database import build_engine, build_session_factory, init_models
from ingestgate.dispatcher import POLICIES
from ingestgate.errors import ConfigurationError, FatalError, LockContentionError
from ingestgate.jobs import JOBS, get_job
from ingestgate.pipeline import open_runner
from ingestgate.report import REPORT_TYPES, quality_report
from ingestgate.scheduler import start_scheduler
from ingestgate.schemas import JobParams


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_FATAL = 2
EXIT_LOCKED = 3

logger = logging.getLogger(__name__)


def _add_date_filters(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--day", type=date.fromisoformat, help="Target day in YYYY-MM-DD format (default: yesterday UTC)")
    parser.add_argument("--since", type=date.fromisoformat, help="Keep points on or after this day")
    parser.add_argument("--start-date", type=date.fromisoformat, help="Range start, inclusive")
    parser.add_argument("--end-date", type=date.fromisoformat, help="Range end, inclusive")
    parser.add_argument("--full", action="store_true", help="Ignore date filters and take a full sync lock")
    parser.add_argument("--recent-points", type=int, help="Keep only the last N points of each series")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fetch, validate and land market data")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="run one batch of a job")
    run_parser.add_argument("job", choices=sorted(JOBS), help="Job to run")
    run_parser.add_argument("--offset", type=int, default=0, help="First candidate index")
    run_parser.add_argument("--limit", type=int, help="Number of candidates (default: DISPATCH_BATCH_SIZE)")
    _add_date_filters(run_parser)

    dispatch_parser = subparsers.add_parser("dispatch", help="split a job into batches and run them concurrently")
    dispatch_parser.add_argument("job", choices=sorted(JOBS), help="Job to dispatch")
    dispatch_parser.add_argument("--batch-size", type=int, help="Candidates per batch")
    dispatch_parser.add_argument("--max-concurrency", type=int, help="Batches in flight at once")
    dispatch_parser.add_argument("--threshold", type=float, help="Fraction of batches that must succeed")
    dispatch_parser.add_argument("--policy", default="window", choices=POLICIES, help="Concurrency policy")
    dispatch_parser.add_argument("--batch-timeout", type=float, help="Seconds before a batch is cancelled")
    _add_date_filters(dispatch_parser)

    schedule_parser = subparsers.add_parser("schedule", help="start the daily dispatch scheduler")
    schedule_parser.add_argument("--run-now", action="store_true", help="also dispatch once immediately")

    report_parser = subparsers.add_parser("report", help="print the data quality report")
    report_parser.add_argument("--days", type=int, default=7, help="Look-back window in days")
    report_parser.add_argument("--job", help="Only report this job name")
    report_parser.add_argument("--type", dest="report_type", default="summary", choices=REPORT_TYPES)

    return parser.parse_args(argv)


def _params(args: argparse.Namespace) -> JobParams:
    return JobParams(
        day=args.day,
        since=args.since,
        start_date=args.start_date,
        end_date=args.end_date,
        full=args.full,
        recent_points=args.recent_points,
    )


def _print_metrics(prefix: str, metrics: dict[str, object]) -> None:
    print(
        "{prefix} total={total} clean={clean} scrubbed={scrubbed} errors={errors} outliers={outliers} score={score}".format(
            prefix=prefix,
            total=metrics["total_records"],
            clean=metrics["clean_records"],
            scrubbed=metrics["scrubbed_records"],
            errors=metrics["error_records"],
            outliers=metrics["outlier_records"],
            score=metrics["overall_quality_score"],
        )
    )


async def _run(settings: Settings, args: argparse.Namespace) -> int:
    job = get_job(args.job)
    async with open_runner(settings) as runner:
        outcome = await runner.run_batch(
            job,
            offset=args.offset,
            limit=args.limit or settings.dispatch_batch_size,
            params=_params(args),
        )
    _print_metrics(f"job={job.name} run_id={outcome.run_id} success={outcome.success}", outcome.metrics or {})
    return EXIT_OK if outcome.success else EXIT_FAILED


async def _dispatch(settings: Settings, args: argparse.Namespace) -> int:
    job = get_job(args.job)
    async with open_runner(settings) as runner:
        result = await runner.dispatch(
            job,
            params=_params(args),
            batch_size=args.batch_size,
            max_concurrency=args.max_concurrency,
            success_threshold=args.threshold,
            policy=args.policy,
            batch_timeout=args.batch_timeout,
        )
    summary = result.summary
    for outcome in summary.outcomes:
        print(
            f"batch={outcome.batch_index} offset={outcome.offset} limit={outcome.limit} "
            f"state={outcome.state} error={outcome.error or '-'}"
        )
    _print_metrics(
        f"job={job.name} run_id={summary.run_id} success={summary.success} "
        f"batches={summary.successful_batches}/{summary.total_batches}",
        result.metrics.as_dict(),
    )
    return EXIT_OK if summary.success else EXIT_FAILED


async def _report(settings: Settings, args: argparse.Namespace) -> int:
    if not settings.database_url:
        raise ConfigurationError(["DATABASE_URL"])
    engine = build_engine(settings)
    try:
        await init_models(engine)
        async with build_session_factory(engine)() as db:
            report = await quality_report(db, days=args.days, job_name=args.job, report_type=args.report_type)
    finally:
        await engine.dispose()
    print(json.dumps(report, indent=2, sort_keys=True, default=str))
    return EXIT_OK


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    try:
        if args.command == "schedule":
            require_runtime_config(settings)
            start_scheduler(settings, run_now=args.run_now)
            return
        if args.command == "report":
            code = asyncio.run(_report(settings, args))
        elif args.command == "dispatch":
            code = asyncio.run(_dispatch(settings, args))
        else:
            code = asyncio.run(_run(settings, args))
    except FatalError as exc:
        logger.error("fatal setup error", extra={"error": str(exc)})
        print(f"error={exc}")
        raise SystemExit(EXIT_FATAL) from exc
    except LockContentionError as exc:
        print(f"error={exc}")
        raise SystemExit(EXIT_LOCKED) from exc
    except ValueError as exc:
        print(f"error={exc}")
        raise SystemExit(EXIT_FATAL) from exc

    if code != EXIT_OK:
        raise SystemExit(code)


if __name__ == "__main__":
    main()
