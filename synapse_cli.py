import argparse
import logging
import os
import sys

from synapse_admin import SynadmNotFound
from synapse_room_list import FetchWithPsql, FetchWithPsycopg, RoomListError

logger = logging.getLogger(__name__)


class ArgumentParser(argparse.ArgumentParser):
  # invalid arguments exit with 1 like every other failure of the tools
  def error(self, message):
    self.print_usage(sys.stderr)
    self.exit(1, f"{self.prog}: error: {message}\n")


def NonNegativeInt(sValue):
  if not sValue.isdigit():
    raise argparse.ArgumentTypeError(f"must be a non-negative integer, got '{sValue}'")
  return int(sValue)


def CreateParser(description, epilog=None):
  parser = ArgumentParser(description=description, epilog=epilog, formatter_class=argparse.RawDescriptionHelpFormatter)
  parser.add_argument("-d", "--dry-run", help="show what would be done without making changes", action="store_true")
  parser.add_argument("-m", "--manual", help="show room details and prompt before each action", action="store_true")
  parser.add_argument("-f", "--force", help="regenerate the room list from the database even if the file exists", action="store_true")
  parser.add_argument("-v", "--verbose", help="log debug output, including synadm output", action="store_true")
  return parser


def AddDatabaseArguments(parser):
  group = parser.add_argument_group("database")
  group.add_argument("--psql", help="query through the local psql client instead of connecting with psycopg2", action="store_true")
  group.add_argument("--psql_user", help="run psql as this system user via sudo (empty to run as yourself)", type=str, default="postgres")
  group.add_argument("--database_host", help="database host", type=str, default=os.getenv("SYNAPSE_DB_HOST", "127.0.0.1"))
  group.add_argument("--database_port", help="database port", type=int, default=5432)
  group.add_argument("--database_name", help="database name", type=str, default="synapse")
  group.add_argument("--database_user", help="database user", type=str, default="synapse_user")
  group.add_argument("--database_password", help="database password", type=str, default=os.getenv("SYNAPSE_DB_PASSWORD", "synapse_password"))


def AddSynadmArguments(parser):
  group = parser.add_argument_group("synadm")
  group.add_argument("--synadm", help="synadm executable", type=str, default=os.getenv("SYNADM_CMD", "synadm"))
  group.add_argument("--synadm_config", help="synadm configuration file (passed as -c)", type=str, default=None)


def ConnectKwargs(args):
  return {
    "database": args.database_name,
    "user": args.database_user,
    "password": args.database_password,
    "host": args.database_host,
    "port": args.database_port,
  }


def ConfigureLogging(verbose=False):
  logging.basicConfig(
    level=logging.DEBUG if verbose else logging.INFO,
    format="%(levelname)s: %(message)s",
    stream=sys.stderr,
  )


def ModeName(args):
  if (args.dry_run):
    return "DRY-RUN (no changes will be made)"
  if (args.manual):
    return "MANUAL (you will be prompted before each room)"
  return "AUTOMATIC (all qualifying rooms will be processed)"


def FetchFunction(args, sQuery):
  if (args.psql):
    return lambda: FetchWithPsql(args.database_name, sQuery, sudo_user=args.psql_user)
  return lambda: FetchWithPsycopg(ConnectKwargs(args), sQuery)


def RunTool(run, args):
  """Run `run(args)` and turn the expected failures into exit status 1."""
  ConfigureLogging(args.verbose)
  try:
    return run(args)
  except RoomListError as err:
    logger.error(str(err))
    if err.output:
      logger.error(f"Output was:\n{err.output.rstrip()}")
    return 1
  except SynadmNotFound as err:
    logger.error(str(err))
    return 1
  except KeyboardInterrupt:
    print()
    logger.error("Interrupted.")
    return 1
