#!/usr/bin/env python3

# Purge room history older than n days from the rooms with the most state in
# the Synapse database, using `synadm history purge`.

import logging
import subprocess
import sys

from synapse_admin import AskConfirmation, CheckSynadmAvailable, DIVIDER_LINE, DryRunAction, PrintEventCountDetails, ProcessRooms, PurgeHistoryAction, RunSummary
from synapse_cli import AddDatabaseArguments, AddSynadmArguments, CreateParser, FetchFunction, ModeName, NonNegativeInt, RunTool
from synapse_room_list import ExcludeSubstrings, FilterRooms, GenerateRoomList, ParseEventCountRow, ReadRoomList, TOP_EVENT_ROOMS_COLUMNS, TopEventRoomsQuery

logger = logging.getLogger(__name__)

ROOM_LIST_FILE = "room.list"
DAYS_TO_KEEP = 30
EXCLUDE_DOMAIN = "fdn.fr"
ROOM_LIMIT = 1000

EPILOG = f"""
The room list is an ASCII table with two columns (room_id | count), e.g.:
 !OGEhHVWSdvArJzumhm:matrix.org               | 159072707

Examples:
  # purge everything older than {DAYS_TO_KEEP} days, rooms matching {EXCLUDE_DOMAIN} are left alone
  %(prog)s

  # show which rooms would be purged, regenerating the list first
  %(prog)s --dry-run --force

  # keep 90 days and protect two domains
  %(prog)s --days 90 --exclude example.org --exclude example.net
"""


def ParseArgs(argv=None):
  parser = CreateParser("Purge Matrix room history older than n days for the busiest rooms. Automatically confirms synadm prompts.", EPILOG)
  parser.add_argument("--days", help=f"days of history to keep (default: {DAYS_TO_KEEP})", type=NonNegativeInt, default=DAYS_TO_KEEP)
  parser.add_argument("--exclude", help=f"skip rooms whose ID contains this text, repeatable (default: {EXCLUDE_DOMAIN})", action="append", default=None)
  parser.add_argument("--limit", help=f"number of rooms to fetch from the database (default: {ROOM_LIMIT})", type=NonNegativeInt, default=ROOM_LIMIT)
  parser.add_argument("--list_file", help=f"room list file (default: {ROOM_LIST_FILE})", type=str, default=ROOM_LIST_FILE)
  AddDatabaseArguments(parser)
  AddSynadmArguments(parser)
  args = parser.parse_args(argv)
  if args.exclude is None:
    args.exclude = [EXCLUDE_DOMAIN]
  return args


def PurgeHistory(args, run=subprocess.run, confirm=AskConfirmation):
  if not args.dry_run:
    CheckSynadmAvailable(args.synadm)

  GenerateRoomList(args.list_file, FetchFunction(args, TopEventRoomsQuery(args.limit)), TOP_EVENT_ROOMS_COLUMNS, args.force)
  records, rejected = ReadRoomList(args.list_file, ParseEventCountRow)
  rooms, excluded = FilterRooms(records, ExcludeSubstrings(args.exclude))

  print("Matrix Room History Purge")
  print(DIVIDER_LINE)
  print(f"Mode: {ModeName(args)}")
  print(f"Keeping {args.days} days of history")
  print(f"Excluding rooms matching: {', '.join(args.exclude) or '(nothing)'}")
  print(DIVIDER_LINE)

  summary = RunSummary(dry_run=args.dry_run)
  summary.skipped += len(rejected)

  action = PurgeHistoryAction(args.days, synadm=args.synadm, config=args.synadm_config, run=run)
  if (args.dry_run):
    action = DryRunAction(action)

  ProcessRooms(rooms, action, summary, manual=args.manual, confirm=confirm, details=PrintEventCountDetails, excluded=excluded)
  summary.Report()

  if not summary.ok:
    logger.error("Completed with errors. See above for details.")
    return 1
  print("Completed successfully.")
  return 0


def main(argv=None):
  return RunTool(PurgeHistory, ParseArgs(argv))


if __name__ == "__main__":
  sys.exit(main())
