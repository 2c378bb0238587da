#!/usr/bin/env python3
"""
nextcloud-backup: Nightly Nextcloud backups to a remote host over SSH.

Main entry point and management commands for the backup system.
"""

import argparse
import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.text import Text

from nextcloud_backup.backup_manager import (
    BackupManager,
    BackupSummary,
    SkippedFilesLog,
    format_size,
)
from nextcloud_backup.config import (
    LOG_FILE_NAME,
    SKIPPED_LOG_FILE_NAME,
    BackupConfig,
    load_config,
    resolve_config_path,
)
from nextcloud_backup.exceptions import BackupError, ConfigMissingError
from nextcloud_backup.self_test import SelfTest
from nextcloud_backup.service import ServiceInstaller, SystemdController

DEFAULT_LOG_DIR = "/var/log/backup"
DEFAULT_LINES = 50
PACKAGE_LOGGER = "nextcloud_backup"
CLI_LOGGER = "nextcloud_backup.cli"

console = Console(highlight=False)
err_console = Console(stderr=True, highlight=False)


def _status(label: str, color: str, message: str, stderr: bool = False) -> None:
    target = err_console if stderr else console
    target.print(Text.assemble((f"[{label}]", color), " ", message))


def info(message: str) -> None:
    _status("INFO", "blue", message)


def success(message: str) -> None:
    _status("SUCCESS", "green", message)


def warning(message: str) -> None:
    _status("WARNING", "yellow", message)


def error(message: str) -> None:
    _status("ERROR", "red", message, stderr=True)


def setup_logging(
    config: Optional[BackupConfig], verbose: bool = False, log_to_file: bool = False
) -> logging.Logger:
    """Set up logging configuration."""
    level = "DEBUG" if verbose else (config.log_level if config else "INFO")
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(
        "%(asctime)s - %(levelname)-8s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_to_file and config is not None:
        log_file_path = config.log_file
        log_file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def format_backup_summary(summary: BackupSummary) -> str:
    """Format a backup summary into a readable report."""
    lines = ["=== Nextcloud Backup Summary ==="]
    lines.append(f"Database dump: {summary.dump_file}")
    lines.append(f"Directories synced: {len(summary.synced_dirs)}")
    for source_dir in summary.synced_dirs:
        lines.append(f"  - {source_dir}")
    if summary.missing_dirs:
        lines.append(f"Directories missing: {len(summary.missing_dirs)}")
        for source_dir in summary.missing_dirs:
            lines.append(f"  - {source_dir}")
    lines.append(
        f"Total bytes transferred: {summary.bytes_transferred:,} bytes "
        f"({format_size(summary.bytes_transferred)})"
    )
    if summary.skipped_count:
        lines.append(f"Skipped (NTFS incompatible): {summary.skipped_count}")
    lines.append(f"Expired dumps deleted: {len(summary.deleted_dumps)}")
    lines.append(f"Total execution time: {summary.execution_time:.2f} seconds")
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nextcloud-backup",
        description="Nextcloud backup manager: MySQL dump and rsync to a remote host over SSH",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Configuration:
  Edit backup.conf to configure directories, remote server, and database settings
  NTFS_COMPATIBILITY  - Set to 'true' to skip NTFS-incompatible files
  SSH_HOST            - Use SSH config host instead of REMOTE_USER@REMOTE_HOST

Examples:
  nextcloud-backup test                    # Check SSH, MySQL and directories
  sudo nextcloud-backup install            # Install the systemd service and timer
  sudo nextcloud-backup enable             # Turn on daily backups
  nextcloud-backup logs 100                # Show the last 100 log lines
        """,
    )
    parser.add_argument("--config", "-c", help="Path to backup.conf (or a YAML file)")
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.add_parser("install", help="Install backup system (requires root)")
    subparsers.add_parser("uninstall", help="Remove backup system (requires root)")
    subparsers.add_parser("backup", help="Run backup now (bypasses systemd)")
    subparsers.add_parser("test", help="Test configuration and connections")
    subparsers.add_parser("enable", help="Enable automatic daily backups (requires root)")
    subparsers.add_parser("disable", help="Disable automatic backups (requires root)")
    subparsers.add_parser("run", help="Run backup via the systemd service (requires root)")
    subparsers.add_parser("status", help="Show service status and schedule")

    logs_parser = subparsers.add_parser("logs", help="Show backup logs")
    logs_parser.add_argument("lines", nargs="?", type=int, default=DEFAULT_LINES)

    skipped_parser = subparsers.add_parser(
        "skipped", help="Show skipped files (NTFS incompatible)"
    )
    skipped_parser.add_argument("lines", nargs="?", type=int, default=DEFAULT_LINES)

    subparsers.add_parser("help", help="Show this help")
    return parser


def require_root(action: str = "This command") -> bool:
    if os.geteuid() != 0:
        error(f"{action} must be run as root")
        return False
    return True


def try_load_config(config_arg: Optional[str]) -> Optional[BackupConfig]:
    """Load the configuration for commands that can work without one."""
    try:
        return load_config(resolve_config_path(config_arg))
    except (ConfigMissingError, ValueError) as e:
        logging.getLogger(CLI_LOGGER).debug(f"Configuration not loaded: {e}")
        return None


def entry_point() -> Path:
    return Path(__file__).resolve()


def cmd_install(args: argparse.Namespace) -> int:
    if not require_root("Installation"):
        return 1

    config_path = resolve_config_path(args.config)
    config = load_config(config_path)
    info("Installing Nextcloud backup system...")

    installer = ServiceInstaller(config, entry_point())
    installer.install(config_path)

    success("Installation completed!")
    info("Files installed:")
    info(f"  Backup launcher: {installer.launcher_path}")
    info(f"  Configuration: {installer.config_path}")
    info(f"  Service: {installer.service_file}")
    info(f"  Timer: {installer.timer_file}")
    info(f"  Logrotate: {installer.logrotate_file}")
    info("")
    info("Next steps:")
    info(f"1. Edit configuration: {installer.config_path}")
    info(f"2. Set up SSH key authentication: ssh-copy-id {config.ssh_target}")
    info("3. Test: nextcloud-backup test")
    info("4. Enable: nextcloud-backup enable")
    return 0


def cmd_uninstall(args: argparse.Namespace) -> int:
    if not require_root("Uninstall"):
        return 1

    config = try_load_config(args.config)
    info("Uninstalling Nextcloud backup system...")
    ServiceInstaller(config, entry_point()).uninstall()

    success("Uninstallation completed!")
    log_dir = config.log_dir if config else DEFAULT_LOG_DIR
    warning(f"Log files in {log_dir} were not removed")
    return 0


def cmd_backup(args: argparse.Namespace) -> int:
    config = load_config(resolve_config_path(args.config))
    logger = setup_logging(config, verbose=args.verbose, log_to_file=True)

    summary = BackupManager(config).run_backup()
    logger.info("\n" + format_backup_summary(summary))
    return 0


def cmd_test(args: argparse.Namespace) -> int:
    config = load_config(resolve_config_path(args.config))
    info("Testing backup configuration...")

    self_test = SelfTest(config)
    for line in self_test.describe():
        info(line)

    results = self_test.run()
    for result in results:
        if result.passed:
            success(f"✓ {result.message}")
        else:
            error(f"✗ {result.message}")
            if result.hint:
                info(result.hint)

    if SelfTest.passed(results):
        success("Configuration test completed successfully!")
        return 0

    failed = sorted({result.name for result in results if not result.passed})
    error(f"Configuration test failed: {', '.join(failed)}")
    return 1


def cmd_enable(args: argparse.Namespace) -> int:
    if not require_root("Enabling backups"):
        return 1

    installer = ServiceInstaller(None, entry_point())
    if not installer.is_installed():
        error("Backup service not installed. Run 'install' first.")
        return 1

    installer.controller.enable_timer()
    success("Automatic backups enabled")
    info("Backup will run daily. Use 'status' to check the schedule.")
    return 0


def cmd_disable(args: argparse.Namespace) -> int:
    if not require_root("Disabling backups"):
        return 1

    SystemdController().disable_timer()
    success("Automatic backups disabled")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    if not require_root("Starting the backup service"):
        return 1

    installer = ServiceInstaller(None, entry_point())
    if not installer.is_installed():
        error("Backup service not installed. Run 'install' first.")
        return 1

    installer.controller.start_service()
    info("Backup started via systemd. Check logs with: nextcloud-backup logs")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    console.print(SystemdController().status(), markup=False)
    return 0


def cmd_logs(args: argparse.Namespace) -> int:
    config = try_load_config(args.config)
    log_file = config.log_file if config else Path(DEFAULT_LOG_DIR) / LOG_FILE_NAME

    console.print("=== Systemd Journal Logs ===", markup=False)
    console.print(SystemdController().journal(args.lines), markup=False)
    console.print()

    if log_file.exists():
        console.print("=== Application Logs ===", markup=False)
        with open(log_file, "r", encoding="utf-8", errors="replace") as f:
            tail = f.read().splitlines()[-args.lines:] if args.lines > 0 else []
        console.print("\n".join(tail), markup=False)
    else:
        info(f"No application logs found at {log_file}")
    return 0


def cmd_skipped(args: argparse.Namespace) -> int:
    config = try_load_config(args.config)
    log_file = (
        config.skipped_log_file if config else Path(DEFAULT_LOG_DIR) / SKIPPED_LOG_FILE_NAME
    )
    skipped_log = SkippedFilesLog(log_file)

    if not skipped_log.path.exists():
        info("No skipped files log found")
        return 0

    console.print("=== Recently Skipped Files (NTFS Incompatible) ===", markup=False)
    console.print("\n".join(skipped_log.tail(args.lines)), markup=False)
    console.print()
    console.print(f"Total skipped files: {skipped_log.count()}", markup=False)
    return 0


COMMANDS = {
    "install": cmd_install,
    "uninstall": cmd_uninstall,
    "backup": cmd_backup,
    "test": cmd_test,
    "enable": cmd_enable,
    "disable": cmd_disable,
    "run": cmd_run,
    "status": cmd_status,
    "logs": cmd_logs,
    "skipped": cmd_skipped,
}


def main(argv: Optional[list] = None) -> int:
    """Main application entry point."""
    start_time = datetime.now()
    parser = build_parser()
    args = parser.parse_args(argv)

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 0

    if args.command != "backup":
        setup_logging(None, verbose=args.verbose)
        if not args.verbose:
            logging.getLogger(PACKAGE_LOGGER).setLevel(logging.WARNING)

    logger = logging.getLogger(CLI_LOGGER)

    try:
        return handler(args)

    except ConfigMissingError as e:
        error_msg = f"Configuration file error: {e}"
        error(error_msg)
        logger.critical(error_msg)
        return 1

    except ValueError as e:
        error_msg = f"Configuration validation error: {e}"
        error(error_msg)
        logger.critical(error_msg)
        return 1

    except BackupError as e:
        action = "Backup" if args.command == "backup" else f"'{args.command}'"
        error_msg = f"{action} failed: {e}"
        error(error_msg)
        logger.critical(error_msg)
        return 1

    except KeyboardInterrupt:
        error_msg = "Backup process interrupted by user"
        error(error_msg)
        logger.warning(error_msg)
        return 130

    except Exception as e:
        error_msg = f"Unexpected error: {e}"
        error(error_msg)
        logger.critical(error_msg, exc_info=True)
        return 1

    finally:
        if args.command == "backup":
            total_time = (datetime.now() - start_time).total_seconds()
            logger.info(f"Backup process finished in {total_time:.2f} seconds")


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
