import ast
import logging
import os
import sys

import click
from genlib.ansiec import ANSIEC

from . import __version__
from .errors import DeviceNotFound, HandshakeFailed, LocalIoError, RemoteError, UpyBitError
from .fs import fs_get, fs_ls, fs_put, fs_rm
from .repl import DEFAULT_TIMEOUT, RawReplSession
from .transport import SERIAL_BAUD_RATE, find_microbits, open_transport

#--------------------------------------------------------------

def load_env_from_upybit():
    """
    Load environment variables from the .upybit file in the .vscode directory.
    This function searches for the .upybit file in the current directory and its parent directories,
    and loads the key-value pairs into the environment variables.
    """
    current_path = os.getcwd()

    while True:
        upybit_path = os.path.join(current_path, ".vscode", ".upybit")
        if os.path.isfile(upybit_path):
            with open(upybit_path) as f:
                for line in f:
                    if '=' in line and not line.strip().startswith('#'):
                        key, val = line.strip().split('=', 1)
                        os.environ[key.strip()] = val.strip()
            break

        parent_path = os.path.dirname(current_path)
        if parent_path == current_path:
            break
        current_path = parent_path


def setup_logging(verbosity: int) -> None:
    """Configure logging based on verbosity level."""
    verbosity = min(verbosity, 2)
    level = (logging.WARNING, logging.INFO, logging.DEBUG)[verbosity]
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


class ColorfulGroup(click.Group):
    """
    Custom Click group that formats commands with colors and styles.
    """
    def format_commands(self, ctx, formatter):
        """
        Format the commands in the group with colors and styles.
        :param ctx: Click context object.
        :param formatter: Formatter object to format the output.
        """
        commands = self.list_commands(ctx)
        rows = []
        for cmd_name in commands:
            cmd = self.get_command(ctx, cmd_name)
            if cmd is None or cmd.hidden:
                continue
            help_text = cmd.get_short_help_str()
            cmd_display = click.style(cmd_name, fg='green', bold=True)
            rows.append((cmd_display, help_text))
        if rows:
            with formatter.section('Commands'):
                formatter.write_dl(rows)


def __fail(message: str):
    click.echo(message, err=True)
    raise click.Abort()


def __red(text: str) -> str:
    return f"{ANSIEC.FG.BRIGHT_RED}{text}{ANSIEC.OP.RESET}"


def __blue(text: str) -> str:
    return f"{ANSIEC.FG.BRIGHT_BLUE}{text}{ANSIEC.OP.RESET}"


def __wrap_expression(cmd: str) -> str:
    """
    Wrap a single expression so its value is printed, like the interactive REPL does.
    """
    try:
        tree = ast.parse(cmd, mode="exec")
        is_expr = (
            len(tree.body) == 1 and
            isinstance(tree.body[0], ast.Expr)
        )
    except SyntaxError:
        is_expr = False

    if is_expr:
        return (
            f"__r={cmd}\n"
            "if __r is not None:\n"
            "    print(repr(__r))\n"
        )
    return cmd if cmd.endswith("\n") else cmd + "\n"


def __print_response(response, source_name: str = None):
    click.echo(response.output, nl=False)
    if response.error:
        error = response.error
        if source_name:
            error = error.replace("<stdin>", os.path.abspath(source_name))
        click.echo(f"{ANSIEC.FG.BRIGHT_MAGENTA}{error.strip()}{ANSIEC.OP.RESET}", err=True)
        raise click.Abort()

#--------------------------------------------------------------

@click.group(cls=ColorfulGroup, invoke_without_command=True)
@click.option(
    "--sport",
    "-s",
    envvar="SERIAL_PORT",
    default="",
    type=click.STRING,
    help="The serial port name for connected device. (Default: first micro:bit found)",
    metavar="SPORT",
)
@click.option(
    "--baud",
    '-b',
    envvar="SERIAL_BAUD",
    default=SERIAL_BAUD_RATE,
    type=click.INT,
    help="Baud rate of the serial connection. (Default 115200)",
    metavar="BAUD",
)
@click.option(
    "--timeout",
    '-t',
    envvar="SERIAL_TIMEOUT",
    default=DEFAULT_TIMEOUT,
    type=click.FLOAT,
    help="Seconds to wait for each device response. (Default 1.0)",
    metavar="SECONDS",
)
@click.option(
    "--command",
    '-c',
    default="",
    type=click.STRING,
    help="Command to execute on the connected device.",
)
@click.option("--verbose", "-V", count=True, help="Increase log verbosity (-V info, -VV debug).")
@click.version_option(__version__, "-v", "--version", message="upybit %(version)s")
@click.pass_context
def cli(ctx, sport, baud, timeout, command, verbose):
    """
    upybit CLI - manage files on a MicroPython micro:bit through its raw REPL.
    """
    setup_logging(verbose)

    if ctx.invoked_subcommand == "scan":
        return

    try:
        transport = open_transport(sport, baud)
    except DeviceNotFound as e:
        __fail(f"Device is not connected: {__red(e.message)}")

    session = RawReplSession(transport, timeout=timeout)
    try:
        session.enter_raw()
    except HandshakeFailed as e:
        session.close()
        __fail(f"Could not talk to the device on {__red(transport.port)}: {e.message}")

    ctx.obj = session
    ctx.call_on_close(session.close)

    if ctx.invoked_subcommand is None and command:
        __print_response(session.execute([__wrap_expression(command)]))


@cli.command()
@click.argument("path", default="")
@click.pass_obj
def ls(session, path):
    """
    List the files in the specified path on the connected device.
    """
    try:
        names = fs_ls(session, path)
    except RemoteError:
        __fail(f"{__red(path or '.')} does not exist.")

    for name in names:
        click.echo(name)


@cli.command()
@click.argument("local", type=click.Path(exists=True, dir_okay=False))
@click.argument("remote", required=False)
@click.option("--chunk-size", "-n", type=click.IntRange(min=1), default=None,
              help="Bytes sent per write statement.")
@click.pass_obj
def put(session, local, remote, chunk_size):
    """
    Upload a local file to the connected device.
    """
    try:
        remote = fs_put(session, local, remote, chunk_size)
    except LocalIoError as e:
        __fail(__red(e.message))
    except RemoteError as e:
        __fail(f"Upload of {__red(local)} failed: {e.message}")

    click.echo(f"{__blue(remote)} ({os.path.getsize(local)} bytes)")


@cli.command()
@click.argument("remote")
@click.argument("local", required=False)
@click.pass_obj
def get(session, remote, local):
    """
    Download a file from the connected device. Without LOCAL, print it to stdout.
    """
    try:
        data = fs_get(session, remote, local)
    except RemoteError:
        __fail(f"The {__red(remote)} does not exist or is not a file.")
    except LocalIoError as e:
        __fail(__red(e.message))

    if not local:
        click.echo(data, nl=False)


@cli.command()
@click.argument("remote")
@click.pass_obj
def rm(session, remote):
    """
    Remove a file from the connected device.
    """
    try:
        fs_rm(session, remote, check=True)
    except RemoteError:
        __fail(f"The {__red(remote)} does not exist.")


@cli.command(name="exec")
@click.argument("code")
@click.pass_obj
def exec_(session, code):
    """
    Execute a line of code on the connected device.
    """
    __print_response(session.execute([__wrap_expression(code)]))


@cli.command()
@click.argument("local_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def run(session, local_file):
    """
    Run the local file on the connected device and print its output.
    """
    with open(local_file, encoding="utf-8") as f:
        source = f.read()
    __print_response(session.execute([source]), local_file)


@cli.command()
def scan():
    """
    Display the serial ports of connected micro:bits.
    """
    ports = find_microbits()
    if not ports:
        click.echo("No micro:bit found.")
    for port in ports:
        click.echo(f"{ANSIEC.FG.BRIGHT_GREEN}{port}{ANSIEC.OP.RESET}")

#--------------------------------------------------------------

def main():
    load_env_from_upybit()
    try:
        cli()
    except UpyBitError as e:
        click.echo(__red(str(e)), err=True)
        sys.exit(1)


if __name__ == '__main__':
    main()
