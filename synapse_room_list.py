"""
Room lists: query the Synapse database for candidate rooms, keep the result
as a psql style ASCII table on disk and read it back as RoomRecords.
"""

import logging
import os
import re
import subprocess
import tempfile
from collections import namedtuple
from decimal import Decimal

import psycopg2

logger = logging.getLogger(__name__)

TOP_EVENT_ROOMS_COLUMNS = ["room_id", "count"]
EMPTY_ROOMS_COLUMNS = ["room_id", "name", "local_users_in_room", "joined_members"]

EMPTY_ROOMS_QUERY = "SELECT room_stats_current.room_id, room_stats_state.name, \
 room_stats_current.local_users_in_room, room_stats_current.joined_members \
 FROM room_stats_current \
 LEFT JOIN room_stats_state ON room_stats_current.room_id = room_stats_state.room_id \
 ORDER BY joined_members DESC, local_users_in_room DESC;"

ROOM_ID_PATTERN = re.compile(r"^![A-Za-z0-9_=/+.-]+:[A-Za-z0-9.-]+(:[0-9]+)?$")
NUMBER_PATTERN = re.compile(r"^[0-9]+$")
DIVIDER_PATTERN = re.compile(r"^[\s+|-]+$")
HEADER_PATTERN = re.compile(r"^\s*room_?id\s*(\||$)", re.IGNORECASE)
FOOTER_PATTERN = re.compile(r"^\s*\(\d+ rows?\)\s*$")
ROOM_ROW_PATTERN = re.compile(r"^\s*!.*\|")

RoomRecord = namedtuple("RoomRecord", ["room_id", "count", "name", "local_users", "line_number"], defaults=["", 0, 0])


class RoomListError(Exception):
  """Generating or reading a room list failed; `output` holds what the query printed."""

  def __init__(self, message, output=None):
    super().__init__(message)
    self.output = output


def TopEventRoomsQuery(limit=1000):
  return f"SELECT room_id, count(*) AS count FROM state_groups_state \
 GROUP BY room_id ORDER BY count DESC LIMIT {int(limit)};"


def FormatValue(value):
  if value is None:
    return ""
  # one table line per row, room names may span several lines
  return " ".join(str(value).splitlines())


def IsNumeric(value):
  return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def FormatTable(columns, rows):
  """Render rows the way `psql` prints them in aligned mode."""
  cells = [[FormatValue(value) for value in row] for row in rows]
  widths = [len(column) for column in columns]
  for row in cells:
    for i, cell in enumerate(row):
      widths[i] = max(widths[i], len(cell))

  lines = [" " + " | ".join(column.center(widths[i]) for i, column in enumerate(columns))]
  lines.append("+".join("-" * (width + 2) for width in widths))
  for row, cellRow in zip(rows, cells):
    parts = []
    for i, cell in enumerate(cellRow):
      if IsNumeric(row[i]):
        parts.append(cell.rjust(widths[i]))
      else:
        parts.append(cell.ljust(widths[i]))
    lines.append(" " + " | ".join(parts))
  lines.append(f"({len(rows)} {'row' if len(rows) == 1 else 'rows'})")
  return "\n".join(line.rstrip() for line in lines) + "\n\n"


def FetchWithPsycopg(connect_kwargs, sQuery):
  try:
    DB = psycopg2.connect(**connect_kwargs)
  except psycopg2.Error as err:
    raise RoomListError("Failed to connect to the database", str(err)) from err

  try:
    hCursor = DB.cursor()
    hCursor.execute(sQuery)
    columns = [column[0] for column in hCursor.description]
    rows = hCursor.fetchall()
    hCursor.close()
  except psycopg2.Error as err:
    raise RoomListError("Failed to generate room list from database", str(err)) from err
  finally:
    DB.close()

  logger.debug(f"query returned {len(rows)} rows")
  return FormatTable(columns, rows)


def FetchWithPsql(database, sQuery, sudo_user=None, run=subprocess.run):
  command = ["psql", f"--dbname={database}", f"--command={sQuery}"]
  if sudo_user:
    command = ["sudo", "-u", sudo_user] + command

  logger.debug(f"running {' '.join(command[:-1])}")
  try:
    result = run(command, capture_output=True, text=True, errors="replace")
  except OSError as err:
    raise RoomListError(f"Failed to run {command[0]}", str(err)) from err

  if result.returncode != 0:
    raise RoomListError("Failed to generate room list from database", (result.stdout or "") + (result.stderr or ""))
  return result.stdout


def CheckRoomListOutput(sOutput, columns):
  bHeader = False
  bRoom = False
  for line in sOutput.splitlines():
    fields = [field.strip() for field in line.split("|")]
    if fields[:len(columns)] == list(columns):
      bHeader = True
    elif ROOM_ROW_PATTERN.match(line):
      bRoom = True
  if not (bHeader and bRoom):
    raise RoomListError("Unexpected output format from database query", sOutput)


def CurrentUmask():
  nUmask = os.umask(0)
  os.umask(nUmask)
  return nUmask


def WriteAtomically(path, sContent):
  directory = os.path.dirname(os.path.abspath(path))
  try:
    hFile = tempfile.NamedTemporaryFile("w", dir=directory, prefix=".room-list-", suffix=".tmp", delete=False, encoding="utf-8")
  except OSError as err:
    raise RoomListError(f"Failed to save room list to {path}", str(err)) from err

  try:
    with hFile:
      hFile.write(sContent)
    os.chmod(hFile.name, 0o666 & ~CurrentUmask())
    os.replace(hFile.name, path)
  except OSError as err:
    if os.path.exists(hFile.name):
      os.remove(hFile.name)
    raise RoomListError(f"Failed to save room list to {path}", str(err)) from err


def GenerateRoomList(path, fetch, columns, force=False):
  """
  Write the query result to `path`. An existing file is reused untouched
  unless `force` is set; returns True when the file was (re)generated.
  """
  if os.path.exists(path) and not force:
    print(f"Using existing room list: {path}")
    print("(Use --force to regenerate from database)")
    return False

  print("Generating room list from database...")
  sOutput = fetch()
  CheckRoomListOutput(sOutput, columns)
  WriteAtomically(path, sOutput)
  print(f"Successfully generated room list: {path}")
  return True


def ValidateRoomId(room_id):
  if not ROOM_ID_PATTERN.match(room_id):
    raise ValueError(f"invalid room ID format: '{room_id}'")
  return room_id


def ValidateNumber(sValue, column):
  if not NUMBER_PATTERN.match(sValue):
    raise ValueError(f"non-numeric {column}: '{sValue}'")
  return int(sValue)


def ParseEventCountRow(fields):
  # room_id | count
  if len(fields) < 2:
    raise ValueError(f"expected 2 columns, got {len(fields)}")
  room_id = ValidateRoomId(fields[0].strip())
  return RoomRecord(room_id, ValidateNumber(fields[1].strip(), "count"))


def ParseMembershipRow(fields):
  # room_id | name | local_users_in_room | joined_members, the name may contain '|'
  if len(fields) < 4:
    raise ValueError(f"expected 4 columns, got {len(fields)}")
  room_id = ValidateRoomId(fields[0].strip())
  local_users = ValidateNumber(fields[-2].strip(), "local_users_in_room")
  joined = ValidateNumber(fields[-1].strip(), "joined_members")
  name = "|".join(fields[1:-2])
  if name.endswith("+"):
    # psql marks a wrapped cell with a trailing '+'
    name = name[:-1]
  name = name.strip()
  return RoomRecord(room_id, joined, name, local_users)


def IsContinuationLine(line):
  # second and later lines of a wrapped psql cell leave the room_id column blank
  return "|" in line and not line.split("|")[0].strip()


def IsStructuralLine(line):
  return (not line.strip()
    or DIVIDER_PATTERN.match(line) is not None
    or HEADER_PATTERN.match(line) is not None
    or FOOTER_PATTERN.match(line) is not None)


def ParseRoomList(lines, parse_row):
  """
  Returns (records, rejected). Headers, dividers, blank lines, the row
  count footer and wrapped cell continuations are skipped silently; rows
  `parse_row` refuses end up in `rejected` as (line_number, reason).
  """
  records = []
  rejected = []
  for nLine, line in enumerate(lines, start=1):
    line = line.rstrip("\r\n")
    if IsStructuralLine(line):
      continue
    if IsContinuationLine(line):
      logger.debug(f"Line {nLine}: continuation of a wrapped cell")
      continue
    try:
      record = parse_row(line.split("|"))
    except ValueError as err:
      logger.warning(f"Line {nLine}: {err} - skipping")
      rejected.append((nLine, str(err)))
      continue
    records.append(record._replace(line_number=nLine))
  return records, rejected


def ReadRoomList(path, parse_row):
  try:
    with open(path, "r", encoding="utf-8", errors="replace") as hFile:
      return ParseRoomList(hFile, parse_row)
  except OSError as err:
    raise RoomListError(f"Cannot read file {path}", str(err)) from err


class ExcludeSubstrings:
  """Keeps rooms whose ID contains none of the patterns."""

  def __init__(self, patterns):
    self.patterns = [pattern for pattern in patterns if pattern]

  def __call__(self, record):
    return not any(pattern in record.room_id for pattern in self.patterns)


class JoinedMembersAtMost:
  """Keeps rooms with `threshold` or fewer joined members."""

  def __init__(self, threshold):
    self.threshold = threshold

  def __call__(self, record):
    return record.count <= self.threshold


def FilterRooms(records, predicate):
  kept = []
  excluded = []
  for record in records:
    if predicate(record):
      kept.append(record)
    else:
      excluded.append(record)
  return kept, excluded
