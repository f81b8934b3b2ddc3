import argparse
import json
import logging
import sys
from pathlib import Path

from pydantic import ValidationError as ConfigValidationError

from . import jobs
from .config import resolve_config
from .queue import JobState, NotFoundError, RenderError, StoreError, ValidationError

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def _print_json(data):
    print(json.dumps(data, indent=2, default=str))


def _print_summary(title, rows):
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)
    for label, value in rows:
        print(f"{label + ':':<22}{value}")
    print("=" * 60)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="quote-reel", description="Quote reel render job queue"
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--db", type=str, help="Queue database path")
    common.add_argument("--config", type=str, help="YAML file overriding config/local.yaml")
    common.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level"
    )

    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", parents=[common], help="Queue a render job")
    submit_parser.add_argument("--text", "-t", type=str, help="Quote text")
    submit_parser.add_argument("--author", type=str, help="Quote author")
    submit_parser.add_argument("--quality", choices=["720p", "1080p", "4k"], help="Output quality")
    submit_parser.add_argument("--payload", type=str, help="Full render request as JSON")
    submit_parser.add_argument("--file", "-f", type=str, help="JSONL file, one render request per line")
    submit_parser.add_argument("--max-attempts", type=int, help="Claim budget for new jobs")

    # STATUS / RESULT
    status_parser = subparsers.add_parser("status", parents=[common], help="Show job status")
    status_parser.add_argument("job_id", type=str, help="Job id")

    result_parser = subparsers.add_parser("result", parents=[common], help="Show job result")
    result_parser.add_argument("job_id", type=str, help="Job id")

    # WORKER (one processing pass)
    worker_parser = subparsers.add_parser(
        "worker", parents=[common], help="Run one processing pass and exit"
    )
    worker_parser.add_argument("--max-jobs", type=int, help="Maximum number of jobs to process")
    worker_parser.add_argument("--max-seconds", type=float, help="Stop claiming after N seconds")
    worker_parser.add_argument("--concurrency", "-w", type=int, help="Parallel claim loops")
    worker_parser.add_argument("--job-timeout", type=float, help="Per-job render ceiling (s)")
    worker_parser.add_argument("--render", type=str, help="Render callable as module:function")

    # RECLAIM
    reclaim_parser = subparsers.add_parser(
        "reclaim", parents=[common], help="Return stale processing jobs to pending"
    )
    reclaim_parser.add_argument(
        "--timeout", dest="stale_timeout", type=float, help="Stale claim age in seconds"
    )

    # QUEUE subcommands (stats, list, history, cleanup)
    queue_parser = subparsers.add_parser("queue", help="Inspect and maintain the queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    queue_subparsers.add_parser("stats", parents=[common], help="Show queue status")

    list_parser = queue_subparsers.add_parser("list", parents=[common], help="List jobs")
    list_parser.add_argument(
        "--state", choices=["pending", "processing", "completed", "failed"], help="Filter by state"
    )
    list_parser.add_argument("--limit", type=int, help="Maximum rows")

    history_parser = queue_subparsers.add_parser(
        "history", parents=[common], help="Show a job's state transitions"
    )
    history_parser.add_argument("job_id", type=str, help="Job id")

    queue_subparsers.add_parser(
        "cleanup", parents=[common], help="Delete finished jobs past retention"
    )

    # SERVE
    serve_parser = subparsers.add_parser("serve", parents=[common], help="Run the HTTP API")
    serve_parser.add_argument("--host", type=str, default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Bind port")

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return
    if args.command == "queue" and args.queue_command is None:
        parser.parse_args(["queue", "--help"])
        return

    # Convert args to dict, filtering None
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    try:
        config = resolve_config(cli_dict, config_path=getattr(args, "config", None))
    except ConfigValidationError as e:
        print(f"Invalid configuration: {e}")
        sys.exit(2)

    logging.basicConfig(level=config.logging.level, format=LOG_FORMAT)

    try:
        _dispatch(args, config)
    except NotFoundError as e:
        print(str(e))
        sys.exit(1)
    except ValidationError as e:
        print(str(e))
        _print_json(e.errors)
        sys.exit(1)
    except StoreError as e:
        print(f"Store unavailable: {e}")
        sys.exit(3)


def _dispatch(args, config):
    if args.command == "submit":
        _submit(args, config)

    elif args.command == "status":
        with jobs.open_store(config) as store:
            _print_json(jobs.get_job_status(store, args.job_id).model_dump(mode="json"))

    elif args.command == "result":
        with jobs.open_store(config) as store:
            view = jobs.get_job_status(store, args.job_id)
            if view.state in (JobState.PENDING, JobState.PROCESSING):
                print(f"Job is {view.state.value} (progress: {view.progress})")
                sys.exit(4)
            try:
                result = jobs.get_job_result(store, args.job_id)
            except RenderError as e:
                print(f"Job failed: {e}")
                sys.exit(1)
        _print_json(result)

    elif args.command == "worker":
        summary = jobs.run_worker(config)
        _print_summary(
            "PROCESSING SUMMARY",
            [
                ("Worker", summary.worker_id),
                ("Processed", summary.processed),
                ("Succeeded", summary.succeeded),
                ("Retried", summary.retried),
                ("Failed", summary.failed),
                ("Total duration", f"{summary.duration_s:.2f}s"),
            ],
        )

    elif args.command == "reclaim":
        count = jobs.run_reclaimer(config)
        print(f"Reclaimed {count} stale jobs")

    elif args.command == "queue":
        _queue(args, config)

    elif args.command == "serve":
        import uvicorn

        from .api.main import app, get_config

        app.dependency_overrides[get_config] = lambda: config
        uvicorn.run(app, host=args.host, port=args.port)


def _build_payload(args):
    """Merge --payload JSON with the individual flags."""
    payload = {}
    if args.payload:
        try:
            payload = json.loads(args.payload)
        except json.JSONDecodeError as e:
            raise ValidationError(
                "Invalid render request: --payload is not valid JSON",
                errors=[{"type": "json_invalid", "loc": ["payload"], "msg": str(e)}],
            ) from e
        if not isinstance(payload, dict):
            raise ValidationError(
                "Invalid render request: --payload must be a JSON object",
                errors=[{"type": "dict_type", "loc": ["payload"], "msg": "Input should be an object"}],
            )

    if args.text is not None:
        payload["text"] = args.text
    if args.author is not None:
        payload["author"] = args.author
    if args.quality is not None:
        payload["quality"] = args.quality
    return payload


def _submit(args, config):
    with jobs.open_store(config) as store:
        if args.file:
            stats = jobs.submit_batch(store, jobs.load_jsonl(Path(args.file)))
            _print_summary(
                "SUBMIT SUMMARY",
                [("Submitted", stats["submitted"]), ("Invalid", stats["invalid"])],
            )
            for entry in stats["errors"]:
                print(f"  line {entry['index'] + 1}: {entry['errors'][0]['msg']}")
            return

        job_id = jobs.submit_job(store, _build_payload(args), max_attempts=args.max_attempts)
        print(job_id)


def _queue(args, config):
    with jobs.open_store(config) as store:
        if args.queue_command == "stats":
            stats = jobs.get_queue_stats(store)
            _print_summary(
                "QUEUE STATUS",
                [
                    ("Pending", stats["pending"]),
                    ("Processing", stats["processing"]),
                    ("Completed", stats["completed"]),
                    ("Failed", stats["failed"]),
                    ("Total", stats["total"]),
                ],
            )

        elif args.queue_command == "list":
            for job in jobs.list_jobs(store, state=args.state, limit=args.limit):
                progress = "-" if job.progress is None else f"{job.progress:.0f}%"
                print(
                    f"{job.id}  {job.state.value:<10}  {progress:>5}  "
                    f"attempts={job.attempts}/{job.max_attempts}  {job.created_at.isoformat()}"
                )

        elif args.queue_command == "history":
            for t in jobs.get_job_history(store, args.job_id):
                line = f"{t.timestamp.isoformat()}  {t.from_state or '-'} -> {t.to_state}"
                if t.worker_id:
                    line += f"  ({t.worker_id})"
                if t.error_snippet:
                    line += f"  {t.error_snippet}"
                print(line)

        elif args.queue_command == "cleanup":
            deleted = jobs.cleanup_old_jobs(store, config.retention)
            print(f"Deleted {deleted['completed']} completed and {deleted['failed']} failed jobs")


if __name__ == "__main__":
    main()
