"""Command-line entry point for pve-ctid-changer."""
import argparse
import sys
from functools import partial
from pathlib import Path

from loguru import logger

from pve_ctid_changer.__version__ import __version__
from pve_ctid_changer.config.settings import MigrationConfig
from pve_ctid_changer.exceptions import (
    EXIT_OPERATIONAL,
    EXIT_SUCCESS,
    EXIT_VALIDATION,
    CommandError,
    MigrationError,
)
from pve_ctid_changer.inventory import EntitySelector, check_environment
from pve_ctid_changer.logging import LoggerFactory, operation_context, setup_logging
from pve_ctid_changer.migration import MigrationExecutor, MigrationReporter
from pve_ctid_changer.platform import ProxmoxPlatform
from pve_ctid_changer.storage import StorageResolver
from pve_ctid_changer.ui import build_menu, choose_storage


def build_parser():
    parser = argparse.ArgumentParser(
        prog="pve-ctid-changer",
        description="Change the ID of a Proxmox VE container or VM via backup and restore",
    )
    parser.add_argument("current_id", nargs="?", help="Current container/VM ID")
    parser.add_argument("new_id", nargs="?", help="New container/VM ID")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose debug output"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run all checks and show the plan without changing anything",
    )
    parser.add_argument(
        "--remove-backup",
        action="store_true",
        help="Delete the backup created by this run after a successful migration",
    )
    parser.add_argument("--log-file", type=Path, help="Log file path")
    parser.add_argument(
        "--no-dialog", action="store_true", help="Use plain-text prompts instead of whiptail"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def build_config(args) -> MigrationConfig:
    return MigrationConfig.from_settings(
        log_file=args.log_file,
        verbose=args.verbose,
        dry_run=args.dry_run,
        interactive=args.current_id is None or args.new_id is None,
        use_dialog=False if args.no_dialog else None,
        keep_backup=False if args.remove_backup else None,
    )


def main(argv=None, platform=None, menu=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = build_config(args)
    setup_logging(verbose=config.verbose, log_file=config.log_file)
    log = LoggerFactory.for_system()
    log.debug(f"pve-ctid-changer {__version__}, log file {config.log_file}")

    platform = platform or ProxmoxPlatform(config)
    reporter = MigrationReporter()
    started = False
    try:
        check_environment()
        if menu is None and config.interactive:
            menu = build_menu(config)
        request = EntitySelector(platform, config, menu).select(args.current_id, args.new_id)

        chooser = partial(choose_storage, menu) if menu is not None else None
        started = True
        with operation_context(
            "migrate", current=request.current.entity_id, new=request.new_id
        ) as job_log:
            reporter = MigrationReporter(job_log)
            executor = MigrationExecutor(
                platform,
                config,
                resolver=StorageResolver(platform, config, chooser=chooser),
                reporter=reporter,
            )
            result = executor.run(request)
    except MigrationError as error:
        reporter.failure(error)
        return error.exit_code
    except CommandError as error:
        reporter.failure(error)
        return EXIT_OPERATIONAL
    except KeyboardInterrupt:
        log.error("Interrupted")
        return EXIT_OPERATIONAL if started else EXIT_VALIDATION
    finally:
        logger.complete()

    if result.cleanup_warning:
        log.warning(f"Migration succeeded with cleanup warning: {result.cleanup_warning}")
        return EXIT_OPERATIONAL
    return EXIT_SUCCESS


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
