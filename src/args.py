"""Argument parsing functionality for protopack."""

import argparse

from constants import Constants


def _add_global_options(parser):
    parser.add_argument("--loglevel",
                        dest="LOG_LEVEL",
                        help="Set the logging level",
                        action="store",
                        type=str.upper,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        default='INFO')
    parser.add_argument("--logfile",
                        dest="LOG_FILE",
                        help="Log output file",
                        action="store",
                        type=str)
    parser.add_argument("-c", "--config",
                        dest="CONFIG",
                        help="Path to configuration file (YAML)",
                        action="store",
                        type=str)
    parser.add_argument("--registry",
                        dest="REGISTRY",
                        help="Registry base URL (overrides config and environment)",
                        action="store",
                        type=str)
    parser.add_argument("-C", "--directory",
                        dest="PROJECT_DIR",
                        help="Project directory holding Proto.toml (default: current directory)",
                        action="store",
                        type=str,
                        default=".")


def build_parser():
    """Build the top-level parser with one subparser per command."""
    parser = argparse.ArgumentParser(
        prog="protopack",
        description="protopack - package manager for protocol buffer schemas",
        add_help=True,
    )
    _add_global_options(parser)
    commands = parser.add_subparsers(dest="COMMAND", metavar="COMMAND")
    commands.required = True

    init = commands.add_parser("init", help=f"Create a {Constants.MANIFEST_FILE} in the project directory")
    kind_group = init.add_mutually_exclusive_group()
    kind_group.add_argument("--api",
                            dest="API_NAME",
                            help="Initialize an api package with this name",
                            action="store", type=str)
    kind_group.add_argument("--lib",
                            dest="LIB_NAME",
                            help="Initialize a library package with this name",
                            action="store", type=str)

    add = commands.add_parser("add", help="Add a dependency to the manifest")
    add.add_argument("DEPENDENCY",
                     help="Dependency as <repository>/<name>@<constraint>",
                     type=str)
    add.add_argument("--kind",
                     dest="KIND",
                     help="Kind of the dependency (default: lib)",
                     action="store",
                     choices=['api', 'lib'],
                     default='lib')

    remove = commands.add_parser("remove", help="Remove a dependency from the manifest")
    remove.add_argument("NAME", help="Dependency name", type=str)

    commands.add_parser("lock", help=f"Resolve dependencies and write {Constants.LOCKFILE_FILE}")
    commands.add_parser("install", help="Install locked dependencies into the vendor tree")
    commands.add_parser("uninstall", help="Remove the vendor tree")

    package = commands.add_parser("package", help="Build the package archive")
    package.add_argument("--output-dir",
                         dest="OUTPUT_DIR",
                         help="Directory to write the archive to (default: project directory)",
                         action="store",
                         type=str)

    publish = commands.add_parser("publish", help="Build and upload the package archive")
    publish.add_argument("--repository",
                         dest="REPOSITORY",
                         help="Repository to publish to",
                         action="store",
                         type=str,
                         required=True)
    publish.add_argument("--dry-run",
                         dest="DRY_RUN",
                         help="Build the archive but do not upload it",
                         action="store_true")

    show = commands.add_parser("show", help="Print the manifest of a published package")
    show.add_argument("PACKAGE",
                      help="Package as <repository>/<name>@<version>",
                      type=str)
    show.add_argument("--json",
                      dest="JSON",
                      help="Print the manifest as JSON",
                      action="store_true")

    login = commands.add_parser("login", help="Store a registry token read from stdin")
    login.add_argument("--registry",
                       dest="LOGIN_REGISTRY",
                       help="Registry base URL",
                       action="store",
                       type=str,
                       required=True)

    logout = commands.add_parser("logout", help="Remove the stored registry token")
    logout.add_argument("--registry",
                        dest="LOGIN_REGISTRY",
                        help="Registry base URL",
                        action="store",
                        type=str,
                        required=True)

    return parser


def parse_args(argv=None):
    """Parses the arguments passed to the program."""
    return build_parser().parse_args(argv)
