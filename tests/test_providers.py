"""
Tests for the local providers — files, commands, packages, settings.

External tools are replaced by a scripted runner; file providers work
against tmp_path.
"""

import os
import re

import pytest

from converge.core.engine.executor import execute_plan
from converge.core.models import ErrorKind, Plan, QueryState, Resource, ResourceKind
from converge.providers import build_registry
from converge.providers.base import ProviderContext
from converge.providers.files.atomic import atomic_write, backup_file, read_current, remove_file
from converge.providers.files.file_line import FileLineProvider, ensure_line
from converge.providers.files.repo_file import RepoFileProvider, parse_mode
from converge.providers.packages.dnf import PackageProvider
from converge.providers.packages.flatpak import FlatpakAppProvider, FlatpakRemoteProvider
from converge.providers.settings.gsetting import GSettingProvider, parse_gvariant, to_gvariant
from converge.providers.shell.command import CommandResult
from converge.providers.system.command import CommandProvider
from converge.providers.system.service import ServiceProvider
from helpers import ScriptedRunner, fail, make_resource, ok


def _ctx(kind: str, spec: dict, **kw) -> ProviderContext:
    return ProviderContext(resource=Resource(id="r", kind=kind, spec=spec, **kw), timeout=30)


# ── Atomic file helpers ──────────────────────────────────────────────


class TestAtomicFiles:
    def test_write_new_file(self, tmp_path):
        target = tmp_path / "etc" / "x.repo"
        atomic_write(target, "hello\n")
        assert target.read_text() == "hello\n"
        assert oct(target.stat().st_mode & 0o777) == oct(0o644)

    def test_write_keeps_existing_mode(self, tmp_path):
        target = tmp_path / "script"
        target.write_text("old")
        target.chmod(0o700)
        atomic_write(target, "new")
        assert target.stat().st_mode & 0o777 == 0o700

    def test_no_temp_files_left(self, tmp_path):
        atomic_write(tmp_path / "a.conf", "x")
        assert [p.name for p in tmp_path.iterdir()] == ["a.conf"]

    def test_backup(self, tmp_path):
        target = tmp_path / "dnf.conf"
        target.write_text("[main]\n")
        backup = backup_file(target)
        assert backup is not None
        assert re.fullmatch(r"dnf\.conf\.bak\.\d{8}_\d{6}", backup.name)
        assert backup.read_text() == "[main]\n"

    def test_backups_in_same_second_never_overwrite(self, tmp_path, monkeypatch):
        monkeypatch.setattr("converge.providers.files.atomic.time.strftime", lambda *args: "20260101_000000")
        target = tmp_path / "dnf.conf"
        target.write_text("original\n")
        first = backup_file(target)
        target.write_text("edited\n")
        second = backup_file(target)
        third = backup_file(target)

        assert first.name == "dnf.conf.bak.20260101_000000"
        assert second.name == "dnf.conf.bak.20260101_000000.1"
        assert third.name == "dnf.conf.bak.20260101_000000.2"
        assert first.read_text() == "original\n"
        assert second.read_text() == "edited\n"

    def test_read_current_keeps_crlf(self, tmp_path):
        target = tmp_path / "win.ini"
        target.write_bytes(b"a\r\nb\r\n")
        assert read_current(target) == "a\r\nb\r\n"

    def test_remove_file(self, tmp_path):
        target = tmp_path / "f"
        target.write_text("x")
        remove_file(target)
        assert not target.exists()
        remove_file(target)

    def test_backup_missing_file(self, tmp_path):
        assert backup_file(tmp_path / "nope") is None

    def test_read_current(self, tmp_path):
        assert read_current(tmp_path / "nope") is None
        (tmp_path / "f").write_text("x")
        assert read_current(tmp_path / "f") == "x"

    def test_parse_mode(self):
        assert parse_mode("0644") == 0o644
        assert parse_mode("755") == 0o755
        assert parse_mode(0o600) == 0o600
        assert parse_mode(None) is None
        with pytest.raises(ValueError):
            parse_mode("rw-r--r--")


# ── repo_file ────────────────────────────────────────────────────────


class TestRepoFileProvider:
    def test_validate(self):
        p = RepoFileProvider()
        assert p.validate(_ctx("repo_file", {"path": "/x", "content": "y"})) == (True, "")
        assert not p.validate(_ctx("repo_file", {"path": "/x"}))[0]
        assert not p.validate(_ctx("repo_file", {"path": "/x", "content": "", "mode": "abc"}))[0]

    def test_converge(self, tmp_path):
        target = tmp_path / "vscode.repo"
        ctx = _ctx("repo_file", {"path": str(target), "content": "[code]\nenabled=1\n"})
        p = RepoFileProvider()

        assert p.query(ctx) == QueryState.UNSATISFIED
        result = p.apply(ctx)
        assert result.ok
        assert target.read_text() == "[code]\nenabled=1\n"
        assert p.query(ctx) == QueryState.SATISFIED

    def test_validate_absent(self):
        p = RepoFileProvider()
        assert p.validate(_ctx("repo_file", {"path": "/x", "state": "absent"})) == (True, "")
        valid, msg = p.validate(_ctx("repo_file", {"path": "/x", "state": "gone"}))
        assert not valid
        assert "state" in msg

    def test_absent_removes_after_backup(self, tmp_path):
        target = tmp_path / "org.gnome.Software.desktop"
        target.write_text("[Desktop Entry]\n")
        ctx = _ctx("repo_file", {"path": str(target), "state": "absent"})
        p = RepoFileProvider()

        assert p.query(ctx) == QueryState.UNSATISFIED
        result = p.apply(ctx)
        assert result.ok
        assert result.detail.startswith("removed")
        assert not target.exists()
        backups = list(tmp_path.glob("org.gnome.Software.desktop.bak.*"))
        assert [b.read_text() for b in backups] == ["[Desktop Entry]\n"]
        assert p.query(ctx) == QueryState.SATISFIED

    def test_absent_already_gone(self, tmp_path):
        ctx = _ctx("repo_file", {"path": str(tmp_path / "nope"), "state": "absent"})
        p = RepoFileProvider()
        assert p.query(ctx) == QueryState.SATISFIED
        assert p.apply(ctx).ok

    def test_changed_content_backed_up(self, tmp_path):
        target = tmp_path / "vscode.repo"
        target.write_text("old\n")
        ctx = _ctx("repo_file", {"path": str(target), "content": "new\n"})
        p = RepoFileProvider()

        assert p.query(ctx) == QueryState.UNSATISFIED
        result = p.apply(ctx)
        assert result.ok
        backups = list(tmp_path.glob("vscode.repo.bak.*"))
        assert len(backups) == 1
        assert backups[0].read_text() == "old\n"
        assert result.metadata["backup"] == str(backups[0])

    def test_mode_applied(self, tmp_path):
        target = tmp_path / "f"
        RepoFileProvider().apply(_ctx("repo_file", {"path": str(target), "content": "x", "mode": "0600"}))
        assert target.stat().st_mode & 0o777 == 0o600

    @pytest.mark.skipif(os.geteuid() == 0, reason="root can write anywhere")
    def test_permission_denied(self, tmp_path):
        locked = tmp_path / "locked"
        locked.mkdir()
        locked.chmod(0o500)
        try:
            result = RepoFileProvider().apply(
                _ctx("repo_file", {"path": str(locked / "f"), "content": "x", "backup": False})
            )
        finally:
            locked.chmod(0o700)
        assert not result.ok
        assert result.error_kind == ErrorKind.PERMISSION_DENIED


# ── file_line ────────────────────────────────────────────────────────


class TestEnsureLine:
    def test_append(self):
        assert ensure_line("[main]\n", "fastestmirror=1", None) == "[main]\nfastestmirror=1\n"

    def test_replace_matching(self):
        content = "[main]\nmax_parallel_downloads=3\ngpgcheck=1\n"
        result = ensure_line(content, "max_parallel_downloads=10", r"^max_parallel_downloads")
        assert result == "[main]\nmax_parallel_downloads=10\ngpgcheck=1\n"

    def test_duplicates_collapsed(self):
        content = 'ZSH_THEME="robbyrussell"\nx\nZSH_THEME="agnoster"\n'
        assert ensure_line(content, 'ZSH_THEME="darkblood"', "^ZSH_THEME=") == 'ZSH_THEME="darkblood"\nx\n'

    def test_already_present(self):
        assert ensure_line("a\nb\n", "b", None) == "a\nb\n"

    def test_crlf_kept(self):
        content = "[main]\r\nfastestmirror=0\r\n"
        assert ensure_line(content, "fastestmirror=1", "^fastestmirror") == "[main]\r\nfastestmirror=1\r\n"
        assert ensure_line("[main]\r\n", "a=1", None) == "[main]\r\na=1\r\n"



class TestFileLineProvider:
    def test_converge(self, tmp_path):
        conf = tmp_path / "dnf.conf"
        conf.write_text("[main]\nmax_parallel_downloads=3\n")
        ctx = _ctx("file_line", {"path": str(conf), "line": "max_parallel_downloads=10", "regexp": "^max_parallel_downloads"})
        p = FileLineProvider()

        assert p.query(ctx) == QueryState.UNSATISFIED
        assert p.apply(ctx).ok
        assert conf.read_text() == "[main]\nmax_parallel_downloads=10\n"
        assert p.query(ctx) == QueryState.SATISFIED
        assert len(list(tmp_path.glob("dnf.conf.bak.*"))) == 1

    def test_missing_file_created(self, tmp_path):
        target = tmp_path / ".zshrc"
        ctx = _ctx("file_line", {"path": str(target), "line": "plugins=(git)"})
        p = FileLineProvider()
        assert p.query(ctx) == QueryState.UNSATISFIED
        assert p.apply(ctx).ok
        assert target.read_text() == "plugins=(git)\n"

    def test_crlf_file_converges_once(self, tmp_path):
        conf = tmp_path / "app.ini"
        conf.write_bytes(b"[main]\r\nmode=old\r\n")
        ctx = _ctx("file_line", {"path": str(conf), "line": "mode=new", "regexp": "^mode="})
        p = FileLineProvider()

        assert p.query(ctx) == QueryState.UNSATISFIED
        assert p.apply(ctx).ok
        assert conf.read_bytes() == b"[main]\r\nmode=new\r\n"
        assert p.query(ctx) == QueryState.SATISFIED

    def test_two_edits_to_one_file_keep_original_backup(self, tmp_path):
        conf = tmp_path / "dnf.conf"
        conf.write_text("[main]\ngpgcheck=True\n")
        plan = Plan.from_resources([
            make_resource(
                "parallel", kind=ResourceKind.FILE_LINE,
                path=str(conf), line="max_parallel_downloads=10", regexp="^max_parallel_downloads",
            ),
            make_resource(
                "mirror", kind=ResourceKind.FILE_LINE,
                path=str(conf), line="fastestmirror=1", regexp="^fastestmirror",
            ),
        ])

        report = execute_plan(plan, build_registry())

        assert report.summary.applied == 2
        assert conf.read_text() == "[main]\ngpgcheck=True\nmax_parallel_downloads=10\nfastestmirror=1\n"
        backups = sorted(tmp_path.glob("dnf.conf.bak.*"))
        assert len(backups) == 2
        assert "[main]\ngpgcheck=True\n" in [b.read_text() for b in backups]

    def test_validate(self):
        p = FileLineProvider()
        assert not p.validate(_ctx("file_line", {"path": "/x", "line": "a\nb"}))[0]
        assert not p.validate(_ctx("file_line", {"path": "/x", "line": "a", "regexp": "("}))[0]


# ── command ──────────────────────────────────────────────────────────


class TestCommandProvider:
    def test_guard_required(self):
        valid, msg = CommandProvider().validate(_ctx("command", {"run": "echo hi"}))
        assert not valid
        assert "guard" in msg

    def test_creates_guard(self, tmp_path):
        marker = tmp_path / "done"
        ctx = _ctx("command", {"run": f"touch {marker}", "creates": str(marker)})
        p = CommandProvider()
        assert p.query(ctx) == QueryState.UNSATISFIED
        assert p.apply(ctx).ok
        assert p.query(ctx) == QueryState.SATISFIED

    def test_check_guard(self, tmp_path):
        p = CommandProvider()
        assert p.query(_ctx("command", {"run": "true", "check": "exit 0"})) == QueryState.SATISFIED
        assert p.query(_ctx("command", {"run": "true", "check": "exit 1"})) == QueryState.UNSATISFIED

    def test_failure_carries_output(self):
        result = CommandProvider().apply(
            _ctx("command", {"run": "echo 'Could not resolve host: example.org' >&2; exit 6", "check": "false"})
        )
        assert not result.ok
        assert result.error_kind == ErrorKind.NETWORK_UNAVAILABLE
        assert "exit 6" in result.detail
        assert "Could not resolve host" in result.detail

    def test_env_passed(self, tmp_path):
        out = tmp_path / "out"
        ctx = _ctx("command", {"run": f'printf "$GREETING" > {out}', "creates": str(out), "env": {"GREETING": "hi"}})
        assert CommandProvider().apply(ctx).ok
        assert out.read_text() == "hi"


# ── package (dnf) ────────────────────────────────────────────────────


class TestPackageProvider:
    def test_installed(self, monkeypatch):
        runner = ScriptedRunner({r"^rpm -q --quiet zsh$": ok()})
        monkeypatch.setattr("converge.providers.packages.dnf.run_command", runner)
        assert PackageProvider().query(_ctx("package", {"name": "zsh"})) == QueryState.SATISFIED

    def test_not_installed(self, monkeypatch):
        runner = ScriptedRunner({r"^rpm -q": fail(code=1)})
        monkeypatch.setattr("converge.providers.packages.dnf.run_command", runner)
        assert PackageProvider().query(_ctx("package", {"name": "zsh"})) == QueryState.UNSATISFIED

    def test_rpm_missing_is_unknown(self, monkeypatch):
        runner = ScriptedRunner({r"^rpm": CommandResult(missing=True)})
        monkeypatch.setattr("converge.providers.packages.dnf.run_command", runner)
        assert PackageProvider().query(_ctx("package", {"name": "zsh"})) == QueryState.UNKNOWN

    def test_replaced_package_still_present(self, monkeypatch):
        runner = ScriptedRunner({r"rpm -q --quiet ffmpeg$": ok(), r"rpm -q --quiet ffmpeg-free$": ok()})
        monkeypatch.setattr("converge.providers.packages.dnf.run_command", runner)
        ctx = _ctx("package", {"name": "ffmpeg", "replaces": "ffmpeg-free"})
        assert PackageProvider().query(ctx) == QueryState.UNSATISFIED

    def test_swap(self, monkeypatch):
        runner = ScriptedRunner({r"rpm -q --quiet ffmpeg-free$": ok()})
        monkeypatch.setattr("converge.providers.packages.dnf.run_command", runner)
        result = PackageProvider().apply(_ctx("package", {"name": "ffmpeg", "replaces": "ffmpeg-free"}))
        assert result.ok
        assert runner.commands[-1] == ["dnf", "swap", "-y", "ffmpeg-free", "ffmpeg", "--allowerasing"]
        assert runner.sudo[-1] is True

    def test_install_from_source(self, monkeypatch):
        runner = ScriptedRunner()
        monkeypatch.setattr("converge.providers.packages.dnf.run_command", runner)
        url = "https://mirrors.rpmfusion.org/free/fedora/rpmfusion-free-release-42.noarch.rpm"
        PackageProvider().apply(_ctx("package", {"name": "rpmfusion-free-release", "source": url}))
        assert runner.commands[-1] == ["dnf", "install", "-y", url]

    def test_group(self, monkeypatch):
        runner = ScriptedRunner({r"group list": ok("Installed Groups:\n   multimedia\n")})
        monkeypatch.setattr("converge.providers.packages.dnf.run_command", runner)
        p = PackageProvider()
        ctx = _ctx("package", {"name": "multimedia", "group": True})
        assert p.query(ctx) == QueryState.SATISFIED
        p.apply(ctx)
        assert runner.commands[-1] == ["dnf", "group", "install", "-y", "multimedia"]

    def test_absent_query(self, monkeypatch):
        p = PackageProvider()
        ctx = _ctx("package", {"name": "firefox", "state": "absent"})
        monkeypatch.setattr("converge.providers.packages.dnf.run_command", ScriptedRunner({r"^rpm -q": ok()}))
        assert p.query(ctx) == QueryState.UNSATISFIED
        monkeypatch.setattr("converge.providers.packages.dnf.run_command", ScriptedRunner({r"^rpm -q": fail(code=1)}))
        assert p.query(ctx) == QueryState.SATISFIED

    def test_absent_removes(self, monkeypatch):
        runner = ScriptedRunner()
        monkeypatch.setattr("converge.providers.packages.dnf.run_command", runner)
        result = PackageProvider().apply(_ctx("package", {"name": "firefox", "state": "absent"}))
        assert result.ok
        assert runner.commands[-1] == ["dnf", "remove", "-y", "firefox"]
        assert runner.sudo[-1] is True

    def test_validate_state(self):
        p = PackageProvider()
        assert p.validate(_ctx("package", {"name": "firefox", "state": "absent"})) == (True, "")
        assert not p.validate(_ctx("package", {"name": "firefox", "state": "purged"}))[0]
        assert not p.validate(_ctx("package", {"name": "multimedia", "group": True, "state": "absent"}))[0]

    def test_sudo_can_be_disabled(self, monkeypatch):
        runner = ScriptedRunner()
        monkeypatch.setattr("converge.providers.packages.dnf.run_command", runner)
        PackageProvider().apply(_ctx("package", {"name": "zsh"}, sudo=False))
        assert runner.sudo[-1] is False

    @pytest.mark.parametrize(
        "stderr, kind",
        [
            ("Error: Unable to find a match: nosuchpkg", ErrorKind.NOT_FOUND),
            ("sudo: a password is required", ErrorKind.PERMISSION_DENIED),
            ("Curl error (6): Could not resolve host: mirrors.fedoraproject.org", ErrorKind.NETWORK_UNAVAILABLE),
            ("Error: Transaction test error", ErrorKind.EXTERNAL_TOOL_FAILED),
        ],
    )
    def test_failure_classified(self, monkeypatch, stderr, kind):
        runner = ScriptedRunner({r"^dnf install": fail(stderr)})
        monkeypatch.setattr("converge.providers.packages.dnf.run_command", runner)
        result = PackageProvider().apply(_ctx("package", {"name": "nosuchpkg"}))
        assert not result.ok
        assert result.error_kind == kind
        assert stderr in result.detail


# ── flatpak ──────────────────────────────────────────────────────────


class TestFlatpakProviders:
    def test_app_query_and_install(self, monkeypatch):
        runner = ScriptedRunner({r"flatpak info": fail("error: org.mozilla.firefox not installed")})
        monkeypatch.setattr("converge.providers.packages.flatpak.run_command", runner)
        p = FlatpakAppProvider()
        ctx = _ctx("flatpak_app", {"app_id": "org.mozilla.firefox"})
        assert p.query(ctx) == QueryState.UNSATISFIED
        assert p.apply(ctx).ok
        cmd = runner.commands[-1]
        assert cmd[:4] == ["flatpak", "install", "-y", "--noninteractive"]
        assert cmd[-2:] == ["flathub", "org.mozilla.firefox"]

    def test_remote_present(self, monkeypatch):
        runner = ScriptedRunner({r"remote-list": ok("fedora\nflathub\n")})
        monkeypatch.setattr("converge.providers.packages.flatpak.run_command", runner)
        ctx = _ctx("flatpak_remote", {"name": "flathub", "url": "https://dl.flathub.org/repo/flathub.flatpakrepo"})
        assert FlatpakRemoteProvider().query(ctx) == QueryState.SATISFIED


# ── gsetting ─────────────────────────────────────────────────────────


class TestGVariant:
    @pytest.mark.parametrize(
        "text, value",
        [
            ("'adw-gtk3'", "adw-gtk3"),
            ("true", True),
            ("uint32 300", 300),
            ("@as []", []),
            ("['a@b', 'c@d']", ["a@b", "c@d"]),
            ("plain", "plain"),
        ],
    )
    def test_parse(self, text, value):
        assert parse_gvariant(text + "\n") == value

    def test_render(self):
        assert to_gvariant("adw-gtk3") == "'adw-gtk3'"
        assert to_gvariant(True) == "true"
        assert to_gvariant(5) == "5"
        assert to_gvariant(["x", "y"]) == "['x', 'y']"
        assert to_gvariant("it's") == "'it\\'s'"
        assert to_gvariant("<Control><Alt>t") == "'<Control><Alt>t'"

    def test_strings_always_quoted(self):
        assert to_gvariant("1") == "'1'"
        assert to_gvariant("true") == "'true'"
        assert to_gvariant("[x]") == "'[x]'"
        assert to_gvariant(["1", 2]) == "['1', 2]"



class TestGSettingProvider:
    SPEC = {"schema": "org.gnome.desktop.interface", "key": "gtk-theme", "value": "adw-gtk3"}

    def test_satisfied(self, monkeypatch):
        runner = ScriptedRunner({r"gsettings get": ok("'adw-gtk3'\n")})
        monkeypatch.setattr("converge.providers.settings.gsetting.run_command", runner)
        assert GSettingProvider().query(_ctx("gsetting", self.SPEC)) == QueryState.SATISFIED

    def test_unsatisfied(self, monkeypatch):
        runner = ScriptedRunner({r"gsettings get": ok("'Adwaita'\n")})
        monkeypatch.setattr("converge.providers.settings.gsetting.run_command", runner)
        assert GSettingProvider().query(_ctx("gsetting", self.SPEC)) == QueryState.UNSATISFIED

    def test_no_session_is_unknown(self, monkeypatch):
        memory = CommandResult(
            returncode=0,
            stdout="'Adwaita'\n",
            stderr="(process:1): GLib-GIO-WARNING **: Using the 'memory' GSettings backend.",
        )
        runner = ScriptedRunner({r"gsettings get": memory})
        monkeypatch.setattr("converge.providers.settings.gsetting.run_command", runner)
        assert GSettingProvider().query(_ctx("gsetting", self.SPEC)) == QueryState.UNKNOWN

    def test_apply_without_session_fails(self, monkeypatch):
        memory = CommandResult(returncode=0, stderr="Using the 'memory' GSettings backend.")
        runner = ScriptedRunner({r"gsettings set": memory})
        monkeypatch.setattr("converge.providers.settings.gsetting.run_command", runner)
        monkeypatch.setattr("converge.providers.settings.gsetting.tool_available", lambda name: True)
        result = GSettingProvider().apply(_ctx("gsetting", self.SPEC))
        assert not result.ok
        assert result.error_kind == ErrorKind.EXTERNAL_TOOL_FAILED

    def test_relocatable_path(self, monkeypatch):
        runner = ScriptedRunner()
        monkeypatch.setattr("converge.providers.settings.gsetting.run_command", runner)
        monkeypatch.setattr("converge.providers.settings.gsetting.tool_available", lambda name: True)
        path = "/org/gnome/settings-daemon/plugins/media-keys/custom-keybindings/custom-terminal/"
        spec = {
            "schema": "org.gnome.settings-daemon.plugins.media-keys.custom-keybinding",
            "path": path,
            "key": "binding",
            "value": "<Control><Alt>t",
        }
        assert GSettingProvider().apply(_ctx("gsetting", spec)).ok
        assert runner.commands[-1] == [
            "gsettings", "set",
            f"org.gnome.settings-daemon.plugins.media-keys.custom-keybinding:{path}",
            "binding", "'<Control><Alt>t'",
        ]

    def test_numeric_string_satisfied(self, monkeypatch):
        runner = ScriptedRunner({r"gsettings get": ok("'1'\n")})
        monkeypatch.setattr("converge.providers.settings.gsetting.run_command", runner)
        monkeypatch.setattr("converge.providers.settings.gsetting.tool_available", lambda name: True)
        spec = {"schema": "org.example", "key": "label", "value": "1"}
        p = GSettingProvider()
        assert p.query(_ctx("gsetting", spec)) == QueryState.SATISFIED
        assert p.apply(_ctx("gsetting", spec)).ok
        assert runner.commands[-1][-1] == "'1'"

    def test_raw_value_passed_verbatim(self, monkeypatch):
        runner = ScriptedRunner({r"gsettings get": ok("uint32 300\n")})
        monkeypatch.setattr("converge.providers.settings.gsetting.run_command", runner)
        monkeypatch.setattr("converge.providers.settings.gsetting.tool_available", lambda name: True)
        spec = {"schema": "org.gnome.desktop.session", "key": "idle-delay", "value": "uint32 300", "raw": True}
        p = GSettingProvider()
        assert p.query(_ctx("gsetting", spec)) == QueryState.SATISFIED
        assert p.apply(_ctx("gsetting", spec)).ok
        assert runner.commands[-1][-1] == "uint32 300"

    def test_raw_requires_string(self):
        spec = {"schema": "s", "key": "k", "value": ["a"], "raw": True}
        assert not GSettingProvider().validate(_ctx("gsetting", spec))[0]

    def test_merge_keeps_existing_items(self, monkeypatch):
        runner = ScriptedRunner({r"gsettings get": ok("['/a/']\n")})
        monkeypatch.setattr("converge.providers.settings.gsetting.run_command", runner)
        monkeypatch.setattr("converge.providers.settings.gsetting.tool_available", lambda name: True)
        spec = {"schema": "s", "key": "custom-keybindings", "value": ["/b/"], "merge": True}
        p = GSettingProvider()
        assert p.query(_ctx("gsetting", spec)) == QueryState.UNSATISFIED
        assert p.apply(_ctx("gsetting", spec)).ok
        assert runner.commands[-1][-1] == "['/a/', '/b/']"


# ── service ──────────────────────────────────────────────────────────


class TestServiceProvider:
    def test_disable(self, monkeypatch):
        runner = ScriptedRunner({r"is-enabled": ok("enabled\n")})
        monkeypatch.setattr("converge.providers.system.service.run_command", runner)
        ctx = _ctx("service", {"unit": "NetworkManager-wait-online.service", "enabled": False})
        p = ServiceProvider()
        assert p.query(ctx) == QueryState.UNSATISFIED
        assert p.apply(ctx).ok
        assert "disable" in runner.commands[-1]

    @pytest.mark.parametrize("state", ["static", "indirect", "generated", "alias"])
    @pytest.mark.parametrize("enabled", [True, False])
    def test_unswitchable_units_satisfied(self, monkeypatch, state, enabled):
        runner = ScriptedRunner({r"is-enabled": ok(f"{state}\n")})
        monkeypatch.setattr("converge.providers.system.service.run_command", runner)
        ctx = _ctx("service", {"unit": "systemd-remount-fs.service", "enabled": enabled})
        assert ServiceProvider().query(ctx) == QueryState.SATISFIED

    def test_enable_disabled_unit(self, monkeypatch):
        runner = ScriptedRunner({r"is-enabled": CommandResult(returncode=1, stdout="disabled\n")})
        monkeypatch.setattr("converge.providers.system.service.run_command", runner)
        assert ServiceProvider().query(_ctx("service", {"unit": "sshd.service"})) == QueryState.UNSATISFIED


# ── Shell runner ─────────────────────────────────────────────────────


class TestRunCommand:
    def test_captures_output(self):
        from converge.providers.shell.command import run_command, shell_command

        result = run_command(shell_command("echo out; echo err >&2; exit 3"))
        assert result.returncode == 3
        assert result.stdout == "out\n"
        assert result.diagnostic == "err"
        assert not result.ok

    def test_missing_binary(self):
        from converge.providers.shell.command import classify_failure, run_command

        result = run_command(["converge-no-such-binary"])
        assert result.missing
        assert result.returncode is None
        assert classify_failure(result) == ErrorKind.EXTERNAL_TOOL_FAILED

    def test_timeout(self):
        from converge.providers.shell.command import classify_failure, failure_result, run_command

        result = run_command(["sleep", "5"], timeout=1)
        assert result.timed_out
        assert classify_failure(result) == ErrorKind.TIMEOUT
        assert failure_result(result, "sleep").detail.startswith("sleep failed:")

    def test_diagnostic_trimmed(self):
        result = CommandResult(returncode=1, stderr="\n".join(f"line {i}" for i in range(50)))
        lines = result.diagnostic.splitlines()
        assert len(lines) == 20
        assert lines[-1] == "line 49"
