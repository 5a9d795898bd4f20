"""protopack - package manager for protocol buffer schemas.

Raises:
    SystemExit: with one of the ``ExitCodes`` values.
"""

import logging
import os
import sys

from args import parse_args
from cli_commands import run_command
from common.credentials import FileCredentialStore
from common.logging_utils import configure_logging, extra_context, is_debug_enabled
from config import load_config
from constants import Constants, ExitCodes

logger = logging.getLogger(__name__)


def _setup_logging(args) -> None:
    """Configure logging from the CLI flags; the CLI level wins over the environment."""
    if getattr(args, "LOG_LEVEL", None):
        os.environ[Constants.LOG_LEVEL_ENV] = str(args.LOG_LEVEL).upper()
    configure_logging(getattr(args, "LOG_LEVEL", None))

    log_file = getattr(args, "LOG_FILE", None)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
        logging.getLogger().addHandler(file_handler)
        logger.debug("Logging to file: %s", log_file)


def main(argv=None):
    """Main function of the program."""
    args = parse_args(argv)
    _setup_logging(args)

    if is_debug_enabled(logger):
        logger.debug(
            "CLI start",
            extra=extra_context(
                event="function_entry", component="cli", action=args.COMMAND
            ),
        )

    try:
        config = load_config(path=args.CONFIG, registry_url=args.REGISTRY)
    except ValueError as exc:
        logger.error("%s", exc)
        sys.exit(ExitCodes.FILE_ERROR.value)

    credentials = FileCredentialStore(config.credentials_path)
    code = run_command(args, config, credentials)

    if is_debug_enabled(logger):
        logger.debug(
            "CLI finished",
            extra=extra_context(
                event="function_exit",
                component="cli",
                action=args.COMMAND,
                outcome="success" if code == ExitCodes.SUCCESS.value else "failure",
            ),
        )
    sys.exit(code)


if __name__ == "__main__":
    main()
