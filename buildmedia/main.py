"""Command line interface for building customized Windows installation media."""

import argparse
import sys
from pathlib import Path

from buildmedia import __version__
from buildmedia.domain.models import AnswerFileConfig, BuildRequest, ImageFormat
from buildmedia.logging import LoggerFactory, setup_logging
from buildmedia.pipeline.controller import PipelineController
from buildmedia.storage import answer_file, workdir_lock
from buildmedia.storage.exceptions import MediaBuildError, OperationCanceledError

EXIT_OK = 0
POLL_SECONDS = 0.2


def _print_progress(text):
    print(text, flush=True)


def build_parser():
    parser = argparse.ArgumentParser(
        prog="buildmedia",
        description="Build customized, bootable Windows installation media from an ISO",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Also log raw tool output")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_workdir(sub):
        sub.add_argument("--workdir", type=Path, required=True, help="Working directory")

    extract = subparsers.add_parser("extract", help="Extract an ISO into the working directory")
    add_workdir(extract)
    extract.add_argument("--iso", type=Path, help="Source Windows ISO")
    extract.add_argument(
        "--existing", action="store_true", help="Use already-extracted files in --workdir"
    )
    extract.add_argument(
        "--force", action="store_true", help="Clear a non-empty working directory first"
    )

    convert = subparsers.add_parser("convert", help="Convert install image between WIM and ESD")
    add_workdir(convert)
    convert.add_argument("--to", required=True, choices=["wim", "esd"], help="Target format")

    add_xml = subparsers.add_parser("add-xml", help="Add an autounattend.xml answer file")
    add_workdir(add_xml)
    source = add_xml.add_mutually_exclusive_group(required=True)
    source.add_argument("--generate", action="store_true", help="Generate from selections")
    source.add_argument("--download", action="store_true", help="Download the template")
    source.add_argument("--file", type=Path, help="Use this answer file")
    add_xml.add_argument(
        "--selections", type=Path, help="JSON selections used with --generate"
    )

    add_drivers = subparsers.add_parser("add-drivers", help="Add drivers to the media")
    add_workdir(add_drivers)
    add_drivers.add_argument(
        "--from",
        dest="driver_folder",
        type=Path,
        help="Driver folder (default: export drivers from this PC)",
    )

    package = subparsers.add_parser("package", help="Create the bootable ISO")
    add_workdir(package)
    package.add_argument("--output", type=Path, required=True, help="Output ISO path")

    info = subparsers.add_parser("info", help="Show working directory and image details")
    add_workdir(info)

    delete_image = subparsers.add_parser(
        "delete-image", help="Delete install.wim or install.esd when both exist"
    )
    add_workdir(delete_image)
    delete_image.add_argument("--format", required=True, choices=["wim", "esd"])

    clean = subparsers.add_parser("clean", help="Delete everything in the working directory")
    add_workdir(clean)
    clean.add_argument("--yes", action="store_true", help="Confirm deletion")

    unlock = subparsers.add_parser(
        "unlock", help="Remove a lock file left behind by an interrupted run"
    )
    add_workdir(unlock)

    build = subparsers.add_parser("build", help="Run the whole pipeline")
    add_workdir(build)
    build.add_argument("--iso", type=Path, help="Source Windows ISO")
    build.add_argument("--existing", action="store_true", help="Use already-extracted files")
    build.add_argument("--force", action="store_true", help="Clear the working directory first")
    build.add_argument("--output", type=Path, required=True, help="Output ISO path")
    build.add_argument("--to", choices=["wim", "esd"], help="Convert the install image")
    xml = build.add_mutually_exclusive_group()
    xml.add_argument("--xml-file", type=Path, help="Answer file to add")
    xml.add_argument("--xml-selections", type=Path, help="Generate answer file from JSON")
    xml.add_argument("--xml-download", action="store_true", help="Download the template")
    build.add_argument(
        "--drivers", type=Path, action="append", default=[], help="Driver folder (repeatable)"
    )
    build.add_argument("--system-drivers", action="store_true", help="Export drivers from this PC")
    return parser


def _run_in_background(pipeline, method, *args):
    """Run ``method`` on a worker thread; Ctrl+C cancels it."""
    task = pipeline.submit(method, *args)
    try:
        while not task.wait(POLL_SECONDS):
            pass
    except KeyboardInterrupt:
        print("Cancelling...", file=sys.stderr, flush=True)
        pipeline.cancel()
        task.wait()
    if task.error is not None:
        raise task.error
    return task.result


def _print_info(pipeline):
    for stage in pipeline.stages():
        marker = "x" if stage.is_complete else "!" if stage.has_failed else " "
        print(f"[{marker}] {stage.stage_id.label}: {stage.status.value} {stage.status_text}".rstrip())
    detection = pipeline.detect_all_formats()
    for info in (detection.wim, detection.esd):
        if info is None:
            continue
        print(f"{info.file_path.name}: {info.size_gb:.2f} GB, {info.image_count} edition(s)")
        for index, name in enumerate(info.edition_names, start=1):
            print(f"  {index}: {name}")
        target = info.format.other
        estimate = info.estimate_size_bytes(target) / 1024**3
        print(f"  estimated {target.name} size: {estimate:.2f} GB")
    if detection.neither_exists:
        print("No install image found")
    if detection.both_exist:
        print("Both install.wim and install.esd exist; delete one before packaging")


def _build_request(args):
    selections = None
    if args.xml_selections is not None:
        selections = answer_file.load_answer_file_config(args.xml_selections)
    return BuildRequest(
        work_dir=args.workdir,
        output_path=args.output,
        iso_path=args.iso,
        use_existing=args.existing,
        force=args.force,
        target_format=ImageFormat.parse(args.to) if args.to else None,
        answer_file=args.xml_file,
        download_answer_file=args.xml_download,
        answer_file_config=selections,
        add_system_drivers=args.system_drivers,
        driver_folders=list(args.drivers),
    )


def unlock_working_directory(work_dir):
    lock_path = workdir_lock.lock_file_path(work_dir)
    if workdir_lock.break_stale_lock(work_dir):
        print(f"Removed {lock_path}")
    else:
        print(f"No lock file at {lock_path}")
    return EXIT_OK


def run_command(args, pipeline):
    """Dispatch the parsed command; returns the process exit code."""
    command = args.command
    if command == "extract":
        if args.existing:
            _run_in_background(pipeline, pipeline.use_existing)
        elif args.iso is None:
            print("extract requires --iso or --existing", file=sys.stderr)
            return 1
        else:
            _run_in_background(pipeline, pipeline.extract, args.iso, args.force)
        return EXIT_OK
    if command == "clean":
        if not args.yes:
            print("Refusing to clean without --yes", file=sys.stderr)
            return 1
        removed = _run_in_background(pipeline, pipeline.clean)
        print(f"Removed {removed} entries from {args.workdir}")
        return EXIT_OK
    if command == "build":
        request = _build_request(args)
        outcome = _run_in_background(pipeline, pipeline.build, request)
        for name, message in outcome.failed.items():
            print(f"{name} failed: {message}", file=sys.stderr)
        if outcome.skipped:
            print(f"Skipped: {', '.join(outcome.skipped)}", file=sys.stderr)
        if outcome.succeeded:
            return EXIT_OK
        return 1 if outcome.failed else 2

    # Every other command works on an already-extracted directory.
    pipeline.use_existing()
    if command == "info":
        _print_info(pipeline)
    elif command == "convert":
        _run_in_background(pipeline, pipeline.convert, ImageFormat.parse(args.to))
    elif command == "delete-image":
        pipeline.delete_image(ImageFormat.parse(args.format))
    elif command == "add-xml":
        if args.file is not None:
            pipeline.select_answer_file(args.file)
        elif args.download:
            _run_in_background(pipeline, pipeline.download_answer_file)
        else:
            selections = AnswerFileConfig()
            if args.selections is not None:
                selections = answer_file.load_answer_file_config(args.selections)
            pipeline.generate_answer_file(selections)
    elif command == "add-drivers":
        if args.driver_folder is not None:
            _run_in_background(pipeline, pipeline.add_custom_drivers, args.driver_folder)
        elif not _run_in_background(pipeline, pipeline.add_system_drivers):
            print("No system drivers were exported")
    elif command == "package":
        _run_in_background(pipeline, pipeline.ensure_tool)
        _run_in_background(pipeline, pipeline.create_iso, args.output)
    return EXIT_OK


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_pipeline()

    try:
        if args.command == "unlock":
            return unlock_working_directory(args.workdir)
        with PipelineController(args.workdir, progress=_print_progress) as pipeline:
            return run_command(args, pipeline)
    except OperationCanceledError as error:
        print(str(error), file=sys.stderr)
        return error.exit_code
    except MediaBuildError as error:
        log.debug(f"{args.command} failed: {type(error).__name__}")
        print(f"Error: {error}", file=sys.stderr)
        return error.exit_code
    except KeyboardInterrupt:
        return OperationCanceledError.exit_code


if __name__ == "__main__":
    sys.exit(main())
