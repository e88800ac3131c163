"""Tests for the davctl command line interface."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner, Result

from davctl import __version__
from davctl.cli import app
from davctl.credentials import parse_entries
from davctl.locking import LockManager

from conftest import FakeExecutor

runner = CliRunner()


@pytest.fixture
def fake(monkeypatch: pytest.MonkeyPatch) -> FakeExecutor:
    """Route every CLI shell-out to a shared fake executor."""
    executor = FakeExecutor()
    monkeypatch.setattr("davctl.cli._build_executor", lambda: executor)
    return executor


def _paths(config_env: dict[str, str]) -> dict[str, Path]:
    base = Path(config_env["DAVCTL_CONFIG_FILE"]).parent
    nginx_dir = base / "etc" / "nginx"
    return {
        "base": base,
        "root": base / "srv" / "webdav",
        "nginx": nginx_dir,
        "passwd": nginx_dir / "webdav.passwd",
        "sites_available": nginx_dir / "sites-available",
        "fstab": base / "etc" / "fstab",
        "log": base / "logs" / "operations.jsonl",
    }


def _setup(config_env: dict[str, str]) -> Result:
    return runner.invoke(app, ["setup", "--yes", "--skip-packages"], env=config_env)


def _output(result: Result) -> str:
    return " ".join(result.stdout.split())


def _log_records(config_env: dict[str, str]) -> list[dict[str, object]]:
    text = _paths(config_env)["log"].read_text(encoding="utf-8")
    return [json.loads(line) for line in text.splitlines() if line]


def test_version_flag() -> None:
    """``--version`` prints the package version."""
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert f"davctl {__version__}" in result.stdout


def test_invalid_config_exits_with_environment_code(tmp_path: Path) -> None:
    """A broken config file is an environment error."""
    config_file = tmp_path / "bad.yml"
    config_file.write_text("- not-a-mapping\n", encoding="utf-8")

    result = runner.invoke(app, ["config", "show"], env={"DAVCTL_CONFIG_FILE": str(config_file)})

    assert result.exit_code == 3
    assert "Configuration error" in _output(result)


def test_config_show_json_masks_password(config_env: dict[str, str], fake: FakeExecutor) -> None:
    """The effective config is rendered without the default password."""
    result = runner.invoke(app, ["config", "show", "--json"], env=config_env)

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["default_password"] == "***"
    assert payload["users"] == ["alice", "bob", "admin"]
    assert fake.commands == []


def test_setup_non_interactive(config_env: dict[str, str], fake: FakeExecutor) -> None:
    """``setup --yes`` provisions storage, credentials and routing."""
    paths = _paths(config_env)

    result = _setup(config_env)

    assert result.exit_code == 0, result.stdout
    assert "WebDAV server is active and configured." in result.stdout
    assert (paths["root"] / "alice").is_dir()
    assert not (paths["root"] / "admin").exists()
    assert list(parse_entries(paths["passwd"].read_text(encoding="utf-8"))) == [
        "alice",
        "bob",
        "admin",
    ]
    units = [path.name for path in paths["sites_available"].iterdir()]
    assert len(units) == 1 and units[0].startswith("davctl-")
    assert "apt-get" not in fake.programs()
    assert fake.commands[-2:] == [["nginx", "-t"], ["systemctl", "restart", "nginx"]]

    (record,) = _log_records(config_env)
    assert record["command"] == "setup"
    assert record["result"]["status"] == "success"
    step_names = [step["name"] for step in record["steps"]]
    assert step_names.index("nginx.validate") < step_names.index("service.restart")


def test_setup_is_idempotent(config_env: dict[str, str], fake: FakeExecutor) -> None:
    """A second run adds no accounts and rewrites no units."""
    paths = _paths(config_env)
    assert _setup(config_env).exit_code == 0
    before = paths["passwd"].read_text(encoding="utf-8")
    fake.commands.clear()

    result = _setup(config_env)

    assert result.exit_code == 0, result.stdout
    assert "htpasswd" not in fake.programs()
    assert paths["passwd"].read_text(encoding="utf-8") == before
    assert "already present" in _output(result)
    assert _log_records(config_env)[-1]["result"]["changed"] == 0


def test_setup_installs_packages_by_default(config_env: dict[str, str], fake: FakeExecutor) -> None:
    """Without ``--skip-packages`` the web server packages are installed first."""
    result = runner.invoke(app, ["setup", "--yes"], env=config_env)

    assert result.exit_code == 0, result.stdout
    assert fake.commands[:2] == [
        ["apt-get", "update"],
        ["apt-get", "install", "-y", "nginx-full", "apache2-utils"],
    ]


def test_setup_interactive_reprompts_invalid_answers(
    config_env: dict[str, str],
    fake: FakeExecutor,
) -> None:
    """Prompts keep asking until an answer is valid."""
    paths = _paths(config_env)
    answers = [
        "",  # root
        "",  # port
        "",  # add another location
        "",  # admin
        "",  # accounts
        "",  # password file
        "",  # max upload size
        "12",  # gzip level, rejected
        "3",  # gzip level
        "n",  # directory listing
        "",  # default password
    ]

    result = runner.invoke(
        app,
        ["setup", "--skip-packages"],
        env=config_env,
        input="\n".join(answers) + "\n",
    )

    assert result.exit_code == 0, result.stdout
    assert "between 1 and 9" in _output(result)
    (unit,) = paths["sites_available"].iterdir()
    text = unit.read_text(encoding="utf-8")
    assert "gzip_comp_level 3;" in text
    assert "autoindex off;" in text


def test_setup_validation_failure_prevents_restart(
    config_env: dict[str, str],
    fake: FakeExecutor,
) -> None:
    """A failing ``nginx -t`` exits with the provider code and skips the restart."""
    fake.fail("nginx", "-t", stderr="emerg: unknown directive")

    result = _setup(config_env)

    assert result.exit_code == 4
    assert "systemctl" not in fake.programs()
    assert _log_records(config_env)[-1]["result"]["status"] == "error"


def test_setup_duplicate_ports_is_validation_error(
    config_env: dict[str, str],
    fake: FakeExecutor,
) -> None:
    """Desired-state errors exit before anything runs."""
    env = dict(config_env)
    env["DAVCTL_LOCATIONS"] = "[{root: /srv/a, port: 8080}, {root: /srv/b, port: 8080}]"

    result = runner.invoke(app, ["setup", "--yes", "--skip-packages"], env=env)

    assert result.exit_code == 1
    assert "Invalid desired state" in _output(result)
    assert fake.commands == []


def test_setup_lock_timeout(config_env: dict[str, str], fake: FakeExecutor) -> None:
    """A concurrent run holding the host lock is an environment error."""
    locks = LockManager(_paths(config_env)["base"] / "run")

    with locks.global_lock():
        result = _setup(config_env)

    assert result.exit_code == 3
    assert fake.commands == []


def test_setup_root_change_without_migrate_keeps_data(
    config_env: dict[str, str],
    fake: FakeExecutor,
) -> None:
    """With ``--yes`` a root change is routed but the old data stays put."""
    paths = _paths(config_env)
    assert _setup(config_env).exit_code == 0
    env = dict(config_env)
    new_root = paths["base"] / "srv" / "raid"
    env["DAVCTL_LOCATIONS"] = f"[{{root: {new_root}, port: 8080}}]"

    result = runner.invoke(app, ["setup", "--yes", "--skip-packages"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "--migrate" in _output(result)
    assert "rsync" not in fake.programs()
    assert (paths["root"] / "alice").is_dir()
    assert (new_root / "alice").is_dir()


def test_setup_migrate_flag_moves_data(config_env: dict[str, str], fake: FakeExecutor) -> None:
    """``--migrate`` moves the old root without asking."""
    paths = _paths(config_env)
    assert _setup(config_env).exit_code == 0
    env = dict(config_env)
    new_root = paths["base"] / "srv" / "raid"
    env["DAVCTL_LOCATIONS"] = f"[{{root: {new_root}, port: 8080}}]"

    result = runner.invoke(app, ["setup", "--yes", "--migrate", "--skip-packages"], env=env)

    assert result.exit_code == 0, result.stdout
    assert ["rsync", "-a", "--remove-source-files", f"{paths['root']}/", f"{new_root}/"] in (
        fake.commands
    )
    assert "Migrated" in _output(result)


def test_users_list_requires_store(config_env: dict[str, str], fake: FakeExecutor) -> None:
    """Management commands refuse to run before setup."""
    result = runner.invoke(app, ["users", "list"], env=config_env)

    assert result.exit_code == 3
    assert "davctl setup" in _output(result)


def test_users_add_requires_store(config_env: dict[str, str], fake: FakeExecutor) -> None:
    """Adding an account needs an existing password file."""
    result = runner.invoke(app, ["users", "add", "carol", "--password", "pw"], env=config_env)

    assert result.exit_code == 3
    assert fake.commands == []


def test_users_lifecycle(config_env: dict[str, str], fake: FakeExecutor) -> None:
    """Accounts can be added, listed, re-keyed and deleted."""
    paths = _paths(config_env)
    assert _setup(config_env).exit_code == 0

    added = runner.invoke(app, ["users", "add", "carol", "--password", "pw"], env=config_env)
    assert added.exit_code == 0, added.stdout
    assert "User 'carol' was added successfully." in added.stdout

    listed = runner.invoke(app, ["users", "list", "--json"], env=config_env)
    assert listed.exit_code == 0
    assert json.loads(listed.stdout) == {"users": ["alice", "bob", "admin", "carol"]}

    changed = runner.invoke(
        app,
        ["users", "passwd", "carol"],
        env=config_env,
        input="secret\nsecret\n",
    )
    assert changed.exit_code == 0, changed.stdout
    assert "updated" in changed.stdout
    assert fake.sensitive[-1] == ("secret",)

    deleted = runner.invoke(app, ["users", "del", "carol"], env=config_env)
    assert deleted.exit_code == 0
    assert "carol" not in parse_entries(paths["passwd"].read_text(encoding="utf-8"))


def test_users_del_unknown_user(config_env: dict[str, str], fake: FakeExecutor) -> None:
    """Deleting an unknown account is a validation error."""
    assert _setup(config_env).exit_code == 0

    result = runner.invoke(app, ["users", "del", "nobody"], env=config_env)

    assert result.exit_code == 1
    assert "not found" in _output(result)


def test_users_add_rejects_bad_name(config_env: dict[str, str], fake: FakeExecutor) -> None:
    """Names that would break the password file are refused."""
    result = runner.invoke(app, ["users", "add", "bad:name", "--password", "pw"], env=config_env)

    assert result.exit_code == 1
    assert fake.commands == []


def test_users_list_table_marks_admin(config_env: dict[str, str], fake: FakeExecutor) -> None:
    """The table output labels the admin account."""
    assert _setup(config_env).exit_code == 0

    result = runner.invoke(app, ["users", "list"], env=config_env)

    assert result.exit_code == 0
    assert "admin" in result.stdout
    assert "alice" in result.stdout


def test_reset_declined(config_env: dict[str, str], fake: FakeExecutor) -> None:
    """Declining the cleanup prompt changes nothing and exits successfully."""
    paths = _paths(config_env)

    result = runner.invoke(app, ["reset"], env=config_env, input="n\n")

    assert result.exit_code == 0
    assert "Operation cancelled by user." in result.stdout
    assert paths["nginx"].is_dir()
    assert fake.commands == []


def test_reset_removes_nginx_but_keeps_data(config_env: dict[str, str], fake: FakeExecutor) -> None:
    """``reset --yes`` removes nginx state and the password file, never the storage root."""
    paths = _paths(config_env)
    assert _setup(config_env).exit_code == 0

    result = runner.invoke(app, ["reset", "--yes"], env=config_env)

    assert result.exit_code == 0, result.stdout
    assert "Cleanup complete." in result.stdout
    assert not paths["nginx"].exists()
    assert not paths["passwd"].exists()
    assert (paths["root"] / "alice").is_dir()
    assert ["systemctl", "stop", "nginx"] in fake.commands
    assert ["apt-get", "remove", "--purge", "-y", "nginx*"] in fake.commands


def test_fresh_rebuilds_from_scratch(config_env: dict[str, str], fake: FakeExecutor) -> None:
    """``fresh --yes`` cleans up and then reconciles again."""
    paths = _paths(config_env)
    assert _setup(config_env).exit_code == 0
    fake.commands.clear()

    result = runner.invoke(app, ["fresh", "--yes", "--skip-packages"], env=config_env)

    assert result.exit_code == 0, result.stdout
    assert fake.programs().index("apt-get") < fake.programs().index("htpasswd")
    assert fake.calls("htpasswd")[0][1] == "-c"
    assert paths["passwd"].exists()
    assert len(list(paths["sites_available"].iterdir())) == 1


def _script_disks(fake: FakeExecutor) -> None:
    fake.script("findmnt", stdout="/dev/sda1\n")
    fake.script("lsblk", stdout="sda 100G disk\nsdb 2T disk\nsdc 2T disk\n")
    fake.script("blkid", stdout="1234-abcd\n")


def test_raid_creates_and_mounts(config_env: dict[str, str], fake: FakeExecutor) -> None:
    """A confirmed session creates the array and registers it in fstab."""
    paths = _paths(config_env)
    _script_disks(fake)
    mountpoint = paths["base"] / "mnt" / "raid"

    result = runner.invoke(
        app,
        ["raid", "--skip-packages"],
        env=config_env,
        input=f"1\n2\ndone\n1\nYES\n{mountpoint}\n",
    )

    assert result.exit_code == 0, result.stdout
    assert "RAID array created and mounted" in result.stdout
    assert fake.calls("mdadm")[0][:5] == [
        "mdadm",
        "--create",
        "/dev/md0",
        "--level=1",
        "--raid-devices=2",
    ]
    fstab = paths["fstab"].read_text(encoding="utf-8")
    assert f"UUID=1234-abcd {mountpoint} ext4 defaults,nofail 0 2" in fstab


def test_raid_cancelled(config_env: dict[str, str], fake: FakeExecutor) -> None:
    """Anything but ``YES`` cancels without touching disks."""
    _script_disks(fake)

    result = runner.invoke(
        app,
        ["raid", "--skip-packages"],
        env=config_env,
        input="1\n2\ndone\n0\nyes\n",
    )

    assert result.exit_code == 0
    assert "cancelled" in result.stdout
    assert "mdadm" not in fake.programs()


def test_raid_level_constraint_failure(config_env: dict[str, str], fake: FakeExecutor) -> None:
    """RAID 5 on two disks is refused with the validation code."""
    _script_disks(fake)

    result = runner.invoke(
        app,
        ["raid", "--skip-packages"],
        env=config_env,
        input="1\n2\ndone\n5\n",
    )

    assert result.exit_code == 1
    assert "RAID 5 requires at least 3 disks" in _output(result)
    assert "mdadm" not in fake.programs()


def test_raid_commit_failure(config_env: dict[str, str], fake: FakeExecutor) -> None:
    """A failing mdadm call exits with the provider code and names the step."""
    _script_disks(fake)
    fake.fail("mdadm", "--create", stderr="device busy")

    result = runner.invoke(
        app,
        ["raid", "--skip-packages"],
        env=config_env,
        input="1\n2\ndone\n0\nYES\n",
    )

    assert result.exit_code == 4
    assert "Failed step: create-array" in _output(result)
    assert "mkfs.ext4" not in fake.programs()


def test_setup_unwritable_routing_directory_is_provider_error(
    config_env: dict[str, str],
    fake: FakeExecutor,
) -> None:
    """File-system failures while writing units exit with the provider code."""
    sites_available = _paths(config_env)["sites_available"]
    sites_available.rmdir()
    sites_available.write_text("not a directory\n", encoding="utf-8")

    result = _setup(config_env)

    assert result.exit_code == 4
    assert "Failed to write routing units" in _output(result)
    assert "systemctl" not in fake.programs()
    assert _log_records(config_env)[-1]["result"]["status"] == "error"
