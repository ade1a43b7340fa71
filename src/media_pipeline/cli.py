import argparse
import json
import shutil
import sys
import uuid
from pathlib import Path

from .config import resolve_config
from .ffmpeg_runner import FfmpegRunner
from .logging_config import configure_logging
from .queue.filesystem import FileQueue
from .queue.submitter import canonical_mime, submit_upload
from .queue.worker import MediaWorker
from .store import SqlAttachmentStore


def build_parser():
    parser = argparse.ArgumentParser(
        prog="media-pipeline", description="Filesystem-queued media conversion for lead attachments"
    )
    parser.add_argument("--config", type=str, help="YAML config file (instead of config/local.yaml)")
    parser.add_argument("--queue-dir", type=str, help="Override queue root directory")
    parser.add_argument("--log-level", type=str, help="Override log level (DEBUG, INFO, ...)")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run the conversion worker")
    worker_parser.add_argument("--once", action="store_true", help="Drain pending once and exit")
    worker_parser.add_argument("--max-jobs", type=int, help="With --once: stop after N jobs")
    worker_parser.add_argument("--max-retries", type=int, help="Override attempt limit")
    worker_parser.add_argument("--threads", type=int, help="ffmpeg -threads for transcodes")
    worker_parser.add_argument(
        "--worker-id", type=str, help="Claim into processing/<worker-id>/ (partitioned claim)"
    )

    # CHECK
    subparsers.add_parser("check", help="Verify ffmpeg, ffprobe and heif-convert")

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", help="Submit a local file for a lead")
    submit_parser.add_argument("file", type=str, help="File to submit (copied, not moved)")
    submit_parser.add_argument("--lead", required=True, type=str, help="Owning lead id")
    submit_parser.add_argument("--mime", type=str, help="MIME type (default: from extension)")

    # QUEUE subcommands (status, show, recover, purge-lead)
    queue_parser = subparsers.add_parser("queue", help="Inspect and repair the job queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    queue_subparsers.add_parser("status", help="Show job counts per state")

    show_parser = queue_subparsers.add_parser("show", help="Print one job record")
    show_parser.add_argument("job_id", type=str)

    recover_parser = queue_subparsers.add_parser(
        "recover", help="Move stale processing entries back to pending"
    )
    recover_parser.add_argument(
        "--max-age", type=float, help="Staleness threshold in seconds (default: config)"
    )

    purge_parser = queue_subparsers.add_parser(
        "purge-lead", help="Drop unfinished jobs and temp files of a lead"
    )
    purge_parser.add_argument("lead_id", type=str)

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", type=str, default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)

    # INIT-DB
    subparsers.add_parser("init-db", help="Create database tables")

    return parser, queue_parser


def main(argv=None):
    parser, queue_parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return

    # Convert args to dict, filtering None
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    config = resolve_config(cli_dict, config_path=args.config)
    configure_logging(config.logging.level, config.logging.format)

    if args.command == "worker":
        worker = MediaWorker(config)
        if args.once:
            worker.prepare()
            counts = worker.run_once(max_jobs=args.max_jobs)
            print("\n" + "=" * 60)
            print("PROCESSING SUMMARY")
            print("=" * 60)
            print(f"Succeeded:            {counts['succeeded']}")
            print(f"Failed:               {counts['failed']}")
            print(f"Re-queued:            {counts['retried']}")
            print(f"Skipped (claimed):    {counts['skipped']}")
            print("=" * 60)
        else:
            worker.run_forever()

    elif args.command == "check":
        print("Checking dependencies...")
        tools = FfmpegRunner.from_config(config).check_tools()
        for name, path in tools.items():
            if path:
                print(f"✅ {name} found: {path}")
            else:
                print(f"❌ {name} NOT found.")
        if not tools["ffmpeg"] or not tools["ffprobe"]:
            sys.exit(1)

    elif args.command == "submit":
        run_submit(config, args.file, args.lead, args.mime)

    elif args.command == "queue":
        queue = FileQueue.from_config(config)

        if args.queue_command == "status":
            stats = queue.stats()
            print("\n" + "=" * 60)
            print("QUEUE STATUS")
            print("=" * 60)
            print(f"Pending:              {stats['pending']}")
            print(f"Processing:           {stats['processing']}")
            print(f"Done:                 {stats['done']}")
            print(f"Failed:               {stats['failed']}")
            print(f"Total:                {stats['total']}")
            print("=" * 60)

        elif args.queue_command == "show":
            found = queue.find(args.job_id)
            if found is None:
                print(f"Job {args.job_id} not found", file=sys.stderr)
                sys.exit(1)
            state, job = found
            print(f"State: {state.value}")
            print(job.to_json())

        elif args.queue_command == "recover":
            max_age = args.max_age if args.max_age is not None else config.worker.stale_processing_s
            recovered = queue.recover_stale(max_age)
            print(f"Recovered {recovered} job(s)")

        elif args.queue_command == "purge-lead":
            removed = queue.purge_lead(args.lead_id, config.paths.temp_dir)
            print(f"Removed {removed} job(s) for lead {args.lead_id}")

        else:
            queue_parser.print_help()

    elif args.command == "serve":
        import uvicorn

        uvicorn.run("media_pipeline.api.main:app", host=args.host, port=args.port)

    elif args.command == "init-db":
        SqlAttachmentStore(config.database.url).init_db()
        print("Tables created.")


def run_submit(config, file_path: str, lead_id: str, mime: str = None) -> None:
    """Copy ``file_path`` into the temp area and hand it to the submitter."""
    source = Path(file_path)
    if not source.is_file():
        print(f"File not found: {file_path}", file=sys.stderr)
        sys.exit(1)

    temp_dir = Path(config.paths.temp_dir)
    temp_dir.mkdir(parents=True, exist_ok=True)
    temp_path = temp_dir / f"upload-{uuid.uuid4()}{source.suffix.lower()}"
    shutil.copyfile(source, temp_path)

    store = SqlAttachmentStore(config.database.url)
    store.init_db()

    def record_on_lead(attachment):
        if not store.append_attachments(lead_id, [attachment.to_record()]):
            print(f"Warning: lead {lead_id} not found, attachment not recorded", file=sys.stderr)

    try:
        attachment = submit_upload(
            str(temp_path),
            source.name,
            source.stat().st_size,
            mime or canonical_mime(source.name),
            lead_id,
            config,
            FileQueue.from_config(config),
            record=record_on_lead,
        )
    except ValueError as e:
        temp_path.unlink(missing_ok=True)
        print(f"Rejected: {e}", file=sys.stderr)
        sys.exit(1)

    print(json.dumps(attachment.to_record(), indent=2))


if __name__ == "__main__":
    main()
