#!/usr/bin/env python3

# Delete Matrix rooms with few or no joined members, using `synadm room delete`.

import logging
import subprocess
import sys

from synapse_admin import AskConfirmation, CheckSynadmAvailable, DeleteRoomAction, DIVIDER_LINE, DryRunAction, ProcessRooms, RunSummary
from synapse_cli import AddDatabaseArguments, AddSynadmArguments, CreateParser, FetchFunction, ModeName, NonNegativeInt, RunTool
from synapse_room_list import EMPTY_ROOMS_COLUMNS, EMPTY_ROOMS_QUERY, FilterRooms, GenerateRoomList, JoinedMembersAtMost, ParseMembershipRow, ReadRoomList

logger = logging.getLogger(__name__)

INPUT_FILE = "empty.list"
DEFAULT_MIN_JOINED_MEMBERS = 1

EPILOG = f"""
The room list is an ASCII table with the columns
  room_id | name | local_users_in_room | joined_members
generated from the Synapse database and reused until --force is given.

Examples:
  # delete every room with {DEFAULT_MIN_JOINED_MEMBERS} or fewer joined members
  %(prog)s

  # show what would be deleted
  %(prog)s --dry-run

  # show details and ask before each deletion
  %(prog)s --manual

  # rooms with 2 or fewer members, fresh list from the database
  %(prog)s --threshold 2 --force
"""


def ParseArgs(argv=None):
  parser = CreateParser("Delete Matrix rooms with few or no joined members.", EPILOG)
  parser.add_argument("-t", "--threshold", help=f"maximum joined members for a room to count as empty (default: {DEFAULT_MIN_JOINED_MEMBERS})", type=NonNegativeInt, default=DEFAULT_MIN_JOINED_MEMBERS)
  parser.add_argument("--list_file", help=f"room list file (default: {INPUT_FILE})", type=str, default=INPUT_FILE)
  AddDatabaseArguments(parser)
  AddSynadmArguments(parser)
  return parser.parse_args(argv)


def DeleteEmptyRooms(args, run=subprocess.run, confirm=AskConfirmation):
  if not args.dry_run:
    CheckSynadmAvailable(args.synadm)

  GenerateRoomList(args.list_file, FetchFunction(args, EMPTY_ROOMS_QUERY), EMPTY_ROOMS_COLUMNS, args.force)
  records, rejected = ReadRoomList(args.list_file, ParseMembershipRow)
  rooms, crowded = FilterRooms(records, JoinedMembersAtMost(args.threshold))
  logger.debug(f"{len(crowded)} rooms have more than {args.threshold} joined members")

  print("Matrix Room Cleanup")
  print(DIVIDER_LINE)
  print(f"Mode: {ModeName(args)}")
  print(f"Threshold: rooms with <= {args.threshold} joined members")
  print(DIVIDER_LINE)
  print()

  summary = RunSummary(dry_run=args.dry_run)
  summary.skipped += len(rejected)

  if not rooms:
    print(f"No rooms found with {args.threshold} or fewer joined members.")
  else:
    print(f"Found {len(rooms)} rooms with {args.threshold} or fewer joined members:")
    print()
    action = DeleteRoomAction(synadm=args.synadm, config=args.synadm_config, run=run)
    if (args.dry_run):
      action = DryRunAction(action)
    ProcessRooms(rooms, action, summary, manual=args.manual, confirm=confirm)

  summary.Report()

  if not summary.ok:
    logger.error("Completed with errors. See above for details.")
    return 1
  print("Completed successfully.")
  return 0


def main(argv=None):
  return RunTool(DeleteEmptyRooms, ParseArgs(argv))


if __name__ == "__main__":
  sys.exit(main())
