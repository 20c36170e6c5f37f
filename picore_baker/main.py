import argparse
import sys
from pathlib import Path

from picore_baker.__version__ import __version__
from picore_baker.app.context import BakeOptions
from picore_baker.app.pipeline import run_bake
from picore_baker.config import settings
from picore_baker.logging import LoggerFactory, setup_logging
from picore_baker.storage.exceptions import BakeError
from picore_baker.storage.finalize import MODES
from picore_baker.storage.interrupts import EXIT_FAILURE, EXIT_SUCCESS


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="picore-baker",
        description="Customize a piCore Raspberry Pi image offline",
    )
    parser.add_argument("image", nargs="?", type=Path, help="Source disk image")
    parser.add_argument("-o", "--output", type=Path, help="Output image path")
    parser.add_argument("--size-mb", type=int, help="Final image size in MiB")
    parser.add_argument("--mode", choices=MODES, help="How the output image is produced")
    parser.add_argument("--archive", help="Name of the rootfs archive on the boot partition")
    parser.add_argument(
        "--inject",
        action="append",
        default=[],
        metavar="SRC:DEST",
        help="Add or replace a file inside the rootfs archive (repeatable)",
    )
    parser.add_argument("--hostname", help="Hostname of the baked system")
    parser.add_argument(
        "--package",
        action="append",
        default=[],
        metavar="PKG",
        help="Extension to load at boot, e.g. nano.tcz (repeatable)",
    )
    parser.add_argument("--config", type=Path, help="Settings file (JSON)")
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write the effective settings to the settings file and exit",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log every command's output")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    parser.add_argument("--no-log-files", action="store_true", help="Log to stderr only")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(
        debug=args.debug,
        trace=args.trace,
        log_dir=args.log_dir,
        file_logging=not args.no_log_files,
    )
    log = LoggerFactory.for_system()

    if args.config is not None:
        if not args.config.is_file() and not args.init_config:
            log.error(f"Settings file not found: {args.config}")
            return EXIT_FAILURE
        settings.load_settings(args.config)

    if args.init_config:
        settings.save_settings(args.config)
        log.info(f"Wrote settings to {args.config or settings.SETTINGS_PATH}")
        return EXIT_SUCCESS

    if args.image is None:
        parser.error("the image argument is required")

    log.info(f"picore-baker {__version__}")
    try:
        options = BakeOptions.from_settings(
            args.image,
            output=args.output,
            size_mb=args.size_mb,
            mode=args.mode,
            archive_name=args.archive,
            hostname=args.hostname,
            packages=args.package,
            injections=args.inject,
        )
    except BakeError as error:
        log.error(str(error))
        return EXIT_FAILURE

    try:
        return run_bake(options)
    except Exception as error:
        log.opt(exception=error).error(f"Unexpected error: {type(error).__name__}")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
