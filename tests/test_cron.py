"""Tests for zfsh.cron module."""
from __future__ import annotations

import json
import shlex

import pytest

from zfsh import cli, cron
from zfsh.models import RetentionPolicy, Settings
from zfsh.retention import PolicyError
from zfsh.units import DAY, HOUR
from tests.conftest import MockExecutor, fail

CRONTAB = """\
MAILTO=root
# nightly report
30 6 * * * /usr/local/bin/report
# zfsh:id=1:type=snapshot:pool=tank
0 * * * * zfsh -q snapshot create tank -r -p backup
# zfsh:id=4:type=cleanup:pool=tank:keep-daily=7
0 3 * * * zfsh -q snapshot cleanup tank -r -y --keep-daily 7
# zfsh:id=2:type=scrub:pool=backup
@weekly zpool scrub backup
"""

POOL_CHECK = ("zpool", "list", "-H", "-o", "name", "tank")


def _executor(crontab=CRONTAB, extra=None):
    responses = {("crontab", "-l"): crontab, ("crontab", "-"): "", POOL_CHECK: "tank\n"}
    responses.update(extra or {})
    return MockExecutor(responses)


def _written(exec_):
    return exec_.inputs[exec_.calls.index(["crontab", "-"])]


class TestParse:
    def test_finds_tagged_tasks(self):
        tasks = cron.parse_crontab(CRONTAB)
        assert [(t.id, t.type, t.pool) for t in tasks] == [
            (1, "snapshot", "tank"), (4, "cleanup", "tank"), (2, "scrub", "backup"),
        ]
        assert tasks[1].schedule == "0 3 * * *"
        assert tasks[1].extra == {"keep-daily": "7"}
        assert tasks[2].schedule == "@weekly"
        assert tasks[2].command == "zpool scrub backup"

    def test_next_id_follows_highest(self):
        assert cron.next_id(cron.parse_crontab(CRONTAB)) == 5
        assert cron.next_id([]) == 1

    def test_render_round_trips(self):
        task = cron.CronTask(7, "scrub", "tank", "0 2 * * 0", "zpool scrub tank", {"x": "y"})
        assert task.render() == "# zfsh:id=7:type=scrub:pool=tank:x=y\n0 2 * * 0 zpool scrub tank\n"
        assert cron.parse_crontab(task.render()) == [task]

    def test_remove_keeps_foreign_lines(self):
        text, removed = cron.remove_tasks(CRONTAB, lambda t: t.pool == "tank")
        assert [t.id for t in removed] == [1, 4]
        assert "MAILTO=root" in text
        assert "/usr/local/bin/report" in text
        assert "snapshot create" not in text
        assert "@weekly zpool scrub backup" in text


class TestSchedule:
    @pytest.mark.parametrize("frequency, expected", [
        ("hourly", "15 * * * *"),
        ("daily", "15 4 * * *"),
        ("weekly", "15 4 * * 0"),
        ("monthly", "15 4 1 * *"),
    ])
    def test_frequencies(self, frequency, expected):
        assert cron.build_schedule(frequency, "04:15") == expected

    def test_expression_wins(self):
        assert cron.build_schedule("daily", "02:00", "*/5  * * * *") == "*/5 * * * *"
        assert cron.build_schedule(expression="@reboot") == "@reboot"

    @pytest.mark.parametrize("time", ["24:00", "2pm", "12:60"])
    def test_bad_time(self, time):
        with pytest.raises(ValueError, match="HH:MM"):
            cron.build_schedule("daily", time)

    def test_bad_expression(self):
        with pytest.raises(ValueError, match="5 fields"):
            cron.build_schedule(expression="0 2 * *")


class TestTaskCommand:
    def test_snapshot(self):
        command, meta = cron.build_task_command("snapshot", "tank", "tank/data", prefix="auto")
        assert command == "zfsh -q snapshot create tank/data -r -p auto"
        assert meta == {}

    def test_backup_to_directory(self):
        command, meta = cron.build_task_command(
            "backup", "tank", "tank", backup_dir="/srv/my backups", compression="gzip",
        )
        assert command == "zfsh -q backup create tank -i -c gzip -o '/srv/my backups'"
        assert meta == {"backup-dir": "/srv/my backups", "compress": "gzip"}

    def test_backup_to_remote(self):
        command, meta = cron.build_task_command("backup", "tank", "tank", remote="nas:backup/tank")
        assert command == "zfsh -q backup send tank nas:backup/tank -i -c zstd"
        assert meta["remote"] == "nas:backup/tank"

    def test_cleanup_flags(self):
        command, meta = cron.build_task_command(
            "cleanup", "tank", "tank", policy=RetentionPolicy(keep_daily=7, keep_monthly=3),
        )
        assert command == "zfsh -q snapshot cleanup tank -r -y --keep-daily 7 --keep-monthly 3"
        assert meta == {"keep-daily": "7", "keep-monthly": "3"}

    def test_cleanup_age(self):
        command, meta = cron.build_task_command(
            "cleanup", "tank", "tank", policy=RetentionPolicy(older_than=3 * DAY),
        )
        assert command.endswith("--older-than 3d")
        assert meta == {"older-than": "3d"}

    @pytest.mark.parametrize("older_than, rendered", [(36 * HOUR, "36h"), (45 * DAY, "45d")])
    def test_cleanup_age_parses_back(self, older_than, rendered):
        policy = RetentionPolicy(older_than=older_than)
        command, meta = cron.build_task_command("cleanup", "tank", "tank", policy=policy)
        assert meta == {"older-than": rendered}
        args = cli.build_parser().parse_args(shlex.split(command)[1:])
        assert cli.build_policy(args, Settings()) == policy

    def test_cleanup_without_policy(self):
        with pytest.raises(PolicyError):
            cron.build_task_command("cleanup", "tank", "tank")

    def test_scrub(self):
        assert cron.build_task_command("scrub", "tank", "tank/data")[0] == "zpool scrub tank"


class TestAdd:
    def test_appends_with_next_id(self, console, capsys):
        exec_ = _executor()
        rc = cron.run_add(exec_, console, "scrub", "tank", frequency="weekly", time="03:30")
        assert rc == 0
        written = _written(exec_)
        assert written.startswith(CRONTAB)
        assert written.endswith("# zfsh:id=5:type=scrub:pool=tank\n30 3 * * 0 zpool scrub tank\n")
        assert "Task #5 added successfully" in capsys.readouterr().out

    def test_empty_crontab(self, json_console, capsys):
        exec_ = _executor(extra={("crontab", "-l"): fail("crontab", "no crontab for root")})
        rc = cron.run_add(exec_, json_console, "snapshot", "tank", frequency="hourly", time="00:00")
        assert rc == 0
        assert _written(exec_) == (
            "# zfsh:id=1:type=snapshot:pool=tank\n0 * * * * zfsh -q snapshot create tank -r -p backup\n"
        )
        assert json.loads(capsys.readouterr().out)["id"] == 1

    def test_unknown_pool(self, console, capsys):
        exec_ = _executor(extra={POOL_CHECK: fail("zpool", "no such pool")})
        assert cron.run_add(exec_, console, "scrub", "tank") == 1
        assert "Pool 'tank' does not exist" in capsys.readouterr().err
        assert ["crontab", "-"] not in exec_.calls

    def test_invalid_type(self, console):
        assert cron.run_add(_executor(), console, "defrag", "tank") == 1

    def test_invalid_time(self, console, capsys):
        assert cron.run_add(_executor(), console, "scrub", "tank", time="25:00") == 1
        assert "Invalid time" in capsys.readouterr().err


class TestList:
    def test_table(self, console, capsys):
        assert cron.run_list(_executor(), console) == 0
        out = capsys.readouterr().out
        assert "Scheduled ZFS Tasks" in out
        assert "zpool scrub backup" in out
        assert "report" not in out

    def test_type_filter_json(self, json_console, capsys):
        cron.run_list(_executor(), json_console, task_type="cleanup")
        tasks = json.loads(capsys.readouterr().out)["tasks"]
        assert [t["id"] for t in tasks] == [4]
        assert tasks[0]["options"] == {"keep-daily": "7"}

    def test_none(self, console, capsys):
        assert cron.run_list(_executor(crontab="MAILTO=root\n"), console) == 0
        assert "No zfsh tasks found" in capsys.readouterr().out


class TestRemove:
    def test_by_id(self, console):
        exec_ = _executor()
        assert cron.run_remove(exec_, console, task_id=4) == 0
        written = _written(exec_)
        assert "id=4" not in written
        assert "cleanup tank" not in written
        assert "id=1" in written and "id=2" in written

    def test_by_pool_and_type(self, console):
        exec_ = _executor()
        cron.run_remove(exec_, console, task_type="snapshot", pool="tank")
        assert [t.id for t in cron.parse_crontab(_written(exec_))] == [4, 2]

    def test_all_requires_confirmation(self, console, monkeypatch):
        monkeypatch.setattr("builtins.input", lambda _: "no")
        exec_ = _executor()
        assert cron.run_remove(exec_, console, remove_all=True) == 0
        assert ["crontab", "-"] not in exec_.calls

    def test_all_confirmed(self, console):
        exec_ = _executor()
        cron.run_remove(exec_, console, remove_all=True, assume_yes=True)
        assert _written(exec_) == "MAILTO=root\n# nightly report\n30 6 * * * /usr/local/bin/report\n"

    def test_no_match(self, console, capsys):
        exec_ = _executor()
        assert cron.run_remove(exec_, console, task_id=99) == 0
        assert "No matching tasks found" in capsys.readouterr().out
        assert ["crontab", "-"] not in exec_.calls

    def test_requires_selector(self, console):
        assert cron.run_remove(_executor(), console) == 1


class TestRunTask:
    def test_executes_command(self, console, capsys):
        exec_ = _executor()
        assert cron.run_test(exec_, console, 2) == 0
        assert exec_.popen_calls == [["zpool", "scrub", "backup"]]
        assert "Task completed successfully" in capsys.readouterr().out

    def test_dry_run_only_prints(self, console):
        exec_ = _executor()
        assert cron.run_test(exec_, console, 1, dry_run=True) == 0
        assert exec_.popen_calls == []

    def test_dry_run_cleanup_passes_flag(self, console):
        exec_ = _executor()
        assert cron.run_test(exec_, console, 4, dry_run=True) == 0
        assert exec_.popen_calls == [[
            "zfsh", "-q", "snapshot", "cleanup", "tank", "-r", "-y", "--keep-daily", "7", "--dry-run",
        ]]

    def test_failure_exit_code(self, console, capsys):
        exec_ = _executor()
        exec_.exit_codes = {"zpool": 2}
        assert cron.run_test(exec_, console, 2) == 1
        assert "Task failed (exit 2)" in capsys.readouterr().err

    def test_unknown_id(self, console, capsys):
        assert cron.run_test(_executor(), console, 42) == 1
        assert "Task #42 not found" in capsys.readouterr().err
