"""
Administrative actions on rooms, carried out through synadm.
"""

import logging
import shutil
import subprocess

logger = logging.getLogger(__name__)

DIVIDER_LINE = "-" * 50

# synadm asks before destructive operations, answer every prompt
CONFIRM_ANSWERS = 5


class SynadmNotFound(Exception):
  pass


def CheckSynadmAvailable(synadm="synadm", which=shutil.which):
  if which(synadm) is None:
    raise SynadmNotFound(f"'{synadm}' command not found. Please install synadm.")


def RunSynadm(args, synadm="synadm", config=None, confirm="y", run=subprocess.run):
  command = [synadm]
  if config:
    command += ["-c", config]
  command += [str(arg) for arg in args]

  logger.debug(f"running {' '.join(command)}")
  try:
    result = run(command, input=f"{confirm}\n" * CONFIRM_ANSWERS, capture_output=True, text=True)
  except OSError as err:
    return False, str(err)

  sOutput = (result.stdout or "") + (result.stderr or "")
  return result.returncode == 0, sOutput


class SynadmAction:
  verb = ""
  past = ""
  dry_run = False

  def __init__(self, synadm="synadm", config=None, run=subprocess.run):
    self.synadm = synadm
    self.config = config
    self.run = run

  def Arguments(self, room):
    raise NotImplementedError

  def Run(self, room):
    return RunSynadm(self.Arguments(room), synadm=self.synadm, config=self.config, run=self.run)


class PurgeHistoryAction(SynadmAction):
  verb = "purge history of"
  past = "purged history of"

  def __init__(self, days, **kwargs):
    super().__init__(**kwargs)
    self.days = days

  def Arguments(self, room):
    return ["history", "purge", room.room_id, "-d", self.days]


class DeleteRoomAction(SynadmAction):
  verb = "delete"
  past = "deleted"

  def Arguments(self, room):
    return ["room", "delete", room.room_id]


class DryRunAction:
  """Stands in for another action and only reports what it would do."""
  dry_run = True

  def __init__(self, action):
    self.action = action
    self.verb = action.verb
    self.past = action.past

  def Run(self, room):
    sMessage = f"[DRY RUN] Would {self.verb} room {room.room_id}"
    if room.name:
      sMessage += f"\n          Name: {room.name}"
    return True, sMessage


class RunSummary:

  def __init__(self, dry_run=False):
    self.dry_run = dry_run
    self.processed = 0
    self.skipped = 0
    self.failed = 0

  @property
  def ok(self):
    return self.failed == 0

  def Report(self):
    print(DIVIDER_LINE)
    print("Processing complete.")
    if (self.dry_run):
      print(f"Rooms that would be processed: {self.processed}")
    else:
      print(f"Rooms processed successfully: {self.processed}")
    print(f"Rooms skipped: {self.skipped}")
    print(f"Rooms failed: {self.failed}")
    if (self.dry_run):
      print("This was a dry run. No rooms were changed.")


def AskConfirmation(prompt, default="n", read=input):
  while True:
    try:
      sAnswer = read(f"{prompt} [{default}]: ")
    except EOFError:
      print()
      return False

    sAnswer = (sAnswer.strip() or default).lower()
    if sAnswer in ("y", "yes"):
      return True
    if sAnswer in ("n", "no"):
      return False
    print("Please answer yes or no (y/n).")


def PrintRoomDetails(room):
  print("Room Details:")
  print(DIVIDER_LINE)
  print(f"Room ID:        {room.room_id}")
  print(f"Name:           {room.name}")
  print(f"Local Users:    {room.local_users}")
  print(f"Joined Members: {room.count}")
  print(DIVIDER_LINE)


def PrintEventCountDetails(room):
  print("Room Details:")
  print(DIVIDER_LINE)
  print(f"Room ID:        {room.room_id}")
  print(f"Count:          {room.count}")
  print(DIVIDER_LINE)


def ProcessRooms(records, action, summary, manual=False, confirm=AskConfirmation, details=PrintRoomDetails, excluded=()):
  """
  Run `action` for every record in list file order. Failures are counted
  and the loop moves on, nothing is retried or rolled back. Rooms in
  `excluded` are reported and counted as skipped at their place in the list.
  """
  excludedIds = {id(room) for room in excluded}
  for room in sorted(list(records) + list(excluded), key=lambda record: record.line_number):
    if id(room) in excludedIds:
      print(f"Line {room.line_number}: Skipping room {room.room_id} (matches exclusion rules)")
      summary.skipped += 1
      continue

    if (manual):
      details(room)
      if not action.dry_run and not confirm(f"{action.verb.capitalize()} this room", "n"):
        print("Skipping this room.")
        print()
        summary.skipped += 1
        continue

    if (action.dry_run):
      _, sOutput = action.Run(room)
      print(sOutput)
      summary.processed += 1
      continue

    print(f"Line {room.line_number}: {action.verb.capitalize()} room {room.room_id}...")
    bOk, sOutput = action.Run(room)
    if (bOk):
      logger.debug(sOutput.rstrip())
      print(f"Successfully {action.past} room {room.room_id}")
      summary.processed += 1
    else:
      logger.error(f"Failed to {action.verb} room {room.room_id}")
      if sOutput.strip():
        logger.error(sOutput.rstrip())
      summary.failed += 1

  return summary
