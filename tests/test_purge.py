import subprocess

import pytest

import synapse_cli
import synapse_purge
from synapse_admin import SynadmNotFound
from synapse_room_list import RoomListError

ROOM_LIST = """\
                room_id                 |   count
----------------------------------------+-----------
 !OGEhHVWSdvArJzumhm:matrix.org         | 159072707
 !abc:fdn.fr                            |      1200
 not-a-room                             |        10
 !def:example.org                       |       abc
 !ghi:example.org                       |       900
(5 rows)

"""


class FakeRunner:
  def __init__(self, failing=()):
    self.failing = set(failing)
    self.commands = []

  def __call__(self, command, **kwargs):
    self.commands.append(command)
    returncode = 1 if any(room in command for room in self.failing) else 0
    return subprocess.CompletedProcess(command, returncode, stdout="", stderr="purge failed\n" if returncode else "")


@pytest.fixture
def room_list(tmp_path):
  path = tmp_path / "room.list"
  path.write_text(ROOM_LIST)
  return path


@pytest.fixture(autouse=True)
def synadm_installed(monkeypatch):
  monkeypatch.setattr(synapse_purge, "CheckSynadmAvailable", lambda synadm: None)


def purged_rooms(run):
  return [command[3] for command in run.commands]


def test_purge_skips_excluded_and_invalid_rooms(room_list, capsys):
  run = FakeRunner()
  args = synapse_purge.ParseArgs(["--list_file", str(room_list)])

  assert synapse_purge.PurgeHistory(args, run=run) == 0

  assert purged_rooms(run) == ["!OGEhHVWSdvArJzumhm:matrix.org", "!ghi:example.org"]
  assert run.commands[0] == ["synadm", "history", "purge", "!OGEhHVWSdvArJzumhm:matrix.org", "-d", "30"]
  out = capsys.readouterr().out
  assert "Skipping room !abc:fdn.fr (matches exclusion rules)" in out
  assert "Rooms processed successfully: 2" in out
  assert "Rooms skipped: 3" in out
  assert "Rooms failed: 0" in out
  assert room_list.read_text() == ROOM_LIST


def test_purge_never_touches_excluded_domains(room_list):
  run = FakeRunner()
  args = synapse_purge.ParseArgs(["--list_file", str(room_list), "--exclude", "matrix.org", "--exclude", "fdn.fr"])

  synapse_purge.PurgeHistory(args, run=run)

  assert purged_rooms(run) == ["!ghi:example.org"]


def test_purge_all_valid_rows_are_processed(tmp_path, capsys):
  path = tmp_path / "room.list"
  path.write_text(
    "      room_id       | count\n"
    "--------------------+-------\n"
    " !a:example.org     |    30\n"
    " !b:example.org     |    20\n"
    " !c:example.org     |    10\n"
    "(3 rows)\n"
  )
  args = synapse_purge.ParseArgs(["--list_file", str(path), "--days", "7"])
  run = FakeRunner()

  assert synapse_purge.PurgeHistory(args, run=run) == 0

  assert all(command[-1] == "7" for command in run.commands)
  out = capsys.readouterr().out
  assert "Rooms processed successfully: 3" in out
  assert "Rooms skipped: 0" in out
  assert "Rooms failed: 0" in out


def test_purge_dry_run_invokes_nothing(room_list, capsys):
  def run(command, **kwargs):
    raise AssertionError("dry run must not call synadm")

  args = synapse_purge.ParseArgs(["--list_file", str(room_list), "--dry-run"])

  assert synapse_purge.PurgeHistory(args, run=run) == 0
  out = capsys.readouterr().out
  assert "Mode: DRY-RUN" in out
  assert "[DRY RUN] Would purge history of room !ghi:example.org" in out
  assert "This was a dry run." in out


def test_purge_failure_exits_non_zero(room_list, capsys):
  run = FakeRunner(failing=["!OGEhHVWSdvArJzumhm:matrix.org"])
  args = synapse_purge.ParseArgs(["--list_file", str(room_list)])

  assert synapse_purge.PurgeHistory(args, run=run) == 1

  assert purged_rooms(run) == ["!OGEhHVWSdvArJzumhm:matrix.org", "!ghi:example.org"]
  assert "Rooms failed: 1" in capsys.readouterr().out


def test_main_generation_failure_aborts_before_any_action(tmp_path, monkeypatch):
  calls = []

  def fetch(connect_kwargs, sQuery):
    calls.append((connect_kwargs, sQuery))
    raise RoomListError("Failed to connect to the database", "could not connect to server")

  monkeypatch.setattr(synapse_cli, "FetchWithPsycopg", fetch)
  path = tmp_path / "room.list"

  assert synapse_purge.main(["--list_file", str(path), "--database_host", "db.example.org", "--limit", "50"]) == 1

  assert not path.exists()
  connect_kwargs, sQuery = calls[0]
  assert connect_kwargs["host"] == "db.example.org"
  assert sQuery.endswith("LIMIT 50;")


def test_main_force_regenerates_through_psql(tmp_path, monkeypatch):
  path = tmp_path / "room.list"
  path.write_text("stale\n")
  fetched = []

  def fetch(database, sQuery, sudo_user=None):
    fetched.append((database, sudo_user))
    return ROOM_LIST

  monkeypatch.setattr(synapse_cli, "FetchWithPsql", fetch)

  assert synapse_purge.main(["--list_file", str(path), "--force", "--psql", "--dry-run"]) == 0
  assert fetched == [("synapse", "postgres")]
  assert path.read_text() == ROOM_LIST


def test_main_missing_synadm(room_list, monkeypatch):
  def check(synadm):
    raise SynadmNotFound(f"'{synadm}' command not found. Please install synadm.")

  monkeypatch.setattr(synapse_purge, "CheckSynadmAvailable", check)

  assert synapse_purge.main(["--list_file", str(room_list)]) == 1


def test_invalid_arguments_exit_with_one():
  with pytest.raises(SystemExit) as excinfo:
    synapse_purge.ParseArgs(["--bogus"])
  assert excinfo.value.code == 1

  with pytest.raises(SystemExit) as excinfo:
    synapse_purge.ParseArgs(["--days", "-3"])
  assert excinfo.value.code == 1


def test_help_exits_with_zero(capsys):
  with pytest.raises(SystemExit) as excinfo:
    synapse_purge.ParseArgs(["--help"])
  assert excinfo.value.code == 0
  assert "--exclude" in capsys.readouterr().out


def test_exclusions_are_reported_in_list_order(room_list, capsys):
  def run(command, **kwargs):
    raise AssertionError("dry run must not call synadm")

  args = synapse_purge.ParseArgs(["--list_file", str(room_list), "--dry-run"])

  assert synapse_purge.PurgeHistory(args, run=run) == 0
  out = capsys.readouterr().out
  nFirst = out.index("Would purge history of room !OGEhHVWSdvArJzumhm:matrix.org")
  nExcluded = out.index("Line 4: Skipping room !abc:fdn.fr")
  nLast = out.index("Would purge history of room !ghi:example.org")
  assert nFirst < nExcluded < nLast
