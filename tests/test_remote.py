"""
Tests for remote providers — GNOME extensions, downloads, git checkouts.

The network is replaced by fake fetch/download callables; external
tools by a scripted runner.
"""

import hashlib
import json
import urllib.error

import pytest

from converge.core.models import ErrorKind, QueryState, Resource
from converge.providers.base import ProviderContext
from converge.providers.remote import http
from converge.providers.remote.download import DownloadProvider, verify_checksum
from converge.providers.remote.gnome_extension import GnomeExtensionProvider, find_extension_id
from converge.providers.remote.scratch import scratch_path
from converge.providers.vcs.git import GitCheckoutProvider
from helpers import ScriptedRunner, fail, ok

UUID = "dash-to-dock@micxgx.gmail.com"


def _ctx(kind: str, spec: dict, scratch_dir=None) -> ProviderContext:
    return ProviderContext(
        resource=Resource(id="r", kind=kind, spec=spec),
        timeout=30,
        scratch_dir=str(scratch_dir) if scratch_dir else None,
    )


def _writer(payload: bytes = b"PK\x03\x04zip"):
    """Fake downloader writing ``payload`` to the destination."""
    calls = []

    def download(url, dest, timeout=300):
        calls.append(url)
        dest.write_bytes(payload)
        return len(payload)

    download.calls = calls
    return download


class FakeSite:
    """extensions.gnome.org stand-in answering by endpoint."""

    def __init__(self, search=None, info=None, error: http.RemoteError | None = None):
        self.search = search if search is not None else {"extensions": [{"uuid": UUID, "pk": 307}]}
        self.info = info if info is not None else {"download_url": f"/download-extension/{UUID}.shell-extension.zip?version_tag=1"}
        self.error = error
        self.urls: list[str] = []

    def __call__(self, url, timeout=30):
        self.urls.append(url)
        if self.error:
            raise self.error
        if "/extension-query/" in url:
            return self.search
        return self.info


# ── Scratch paths ────────────────────────────────────────────────────


class TestScratchPath:
    def test_removed_after_use(self, tmp_path):
        with scratch_path(str(tmp_path)) as workdir:
            (workdir / "file").write_text("x")
            assert workdir.parent == tmp_path
        assert list(tmp_path.iterdir()) == []

    def test_removed_on_exception(self, tmp_path):
        with pytest.raises(RuntimeError):
            with scratch_path(str(tmp_path)) as workdir:
                (workdir / "file").write_text("x")
                raise RuntimeError("boom")
        assert list(tmp_path.iterdir()) == []


# ── HTTP helpers ─────────────────────────────────────────────────────


class TestHttp:
    def test_fetch_json_file_url(self, tmp_path):
        doc = tmp_path / "query.json"
        doc.write_text(json.dumps({"extensions": []}))
        assert http.fetch_json(doc.as_uri()) == {"extensions": []}

    def test_fetch_json_invalid(self, tmp_path):
        doc = tmp_path / "query.json"
        doc.write_text("<html>")
        with pytest.raises(http.RemoteError) as exc:
            http.fetch_json(doc.as_uri())
        assert exc.value.error_kind == ErrorKind.NOT_FOUND

    def test_download_file_url(self, tmp_path):
        src = tmp_path / "src.bin"
        src.write_bytes(b"abc")
        assert http.download(src.as_uri(), tmp_path / "out") == 3
        assert (tmp_path / "out").read_bytes() == b"abc"

    def test_empty_download(self, tmp_path):
        src = tmp_path / "empty"
        src.write_bytes(b"")
        with pytest.raises(http.RemoteError) as exc:
            http.download(src.as_uri(), tmp_path / "out")
        assert exc.value.error_kind == ErrorKind.NOT_FOUND

    @pytest.mark.parametrize(
        "exc, kind",
        [
            (urllib.error.HTTPError("u", 404, "Not Found", None, None), ErrorKind.NOT_FOUND),
            (urllib.error.HTTPError("u", 403, "Forbidden", None, None), ErrorKind.PERMISSION_DENIED),
            (urllib.error.HTTPError("u", 500, "Error", None, None), ErrorKind.EXTERNAL_TOOL_FAILED),
            (urllib.error.URLError("Name or service not known"), ErrorKind.NETWORK_UNAVAILABLE),
            (urllib.error.URLError(TimeoutError()), ErrorKind.TIMEOUT),
        ],
    )
    def test_classify(self, exc, kind):
        assert http._classify("u", exc).error_kind == kind


# ── GNOME extensions ─────────────────────────────────────────────────


class TestFindExtensionId:
    def test_by_uuid(self):
        data = {"extensions": [{"uuid": "other@x", "pk": 1}, {"uuid": UUID, "pk": 307}]}
        assert find_extension_id(data, UUID) == 307

    def test_by_name(self):
        data = {"extensions": [{"uuid": "fork@x", "name": "Dash to Dock", "pk": 5}]}
        assert find_extension_id(data, UUID, "dash to dock") == 5

    def test_no_match(self):
        assert find_extension_id({"extensions": []}, UUID) is None
        assert find_extension_id(["unexpected"], UUID) is None

    @pytest.mark.parametrize("pk", ["abc", None, [1], ""])
    def test_malformed_pk_skipped(self, pk):
        data = {"extensions": [{"uuid": UUID, "pk": pk}]}
        assert find_extension_id(data, UUID) is None

    def test_malformed_uuid_entry_falls_back_to_name(self):
        data = {"extensions": [{"uuid": UUID, "pk": "n/a"}, {"uuid": "fork@x", "name": "Dash to Dock", "pk": "12"}]}
        assert find_extension_id(data, UUID, "Dash to Dock") == 12


class TestGnomeExtensionProvider:
    SPEC = {"uuid": UUID, "name": "Dash to Dock", "shell_version": "48"}

    def _provider(self, site=None, downloader=None, runner=None):
        return GnomeExtensionProvider(
            fetch_json=site or FakeSite(),
            downloader=downloader or _writer(),
            runner=runner or ScriptedRunner({r"gsettings get": ok("@as []\n")}),
        )

    def test_install_and_enable(self, tmp_path):
        site, downloader = FakeSite(), _writer()
        runner = ScriptedRunner({r"gsettings get": ok("['appindicatorsupport@rgcjonas.gmail.com']\n")})
        scratch = tmp_path / "scratch"

        result = self._provider(site, downloader, runner).apply(_ctx("gnome_extension", self.SPEC, scratch))

        assert result.ok, result.detail
        assert result.metadata["id"] == 307
        assert "shell_version=48" in site.urls[1]
        assert downloader.calls[0].startswith("https://extensions.gnome.org/download-extension/")
        install = runner.commands[0]
        assert install[:3] == ["gnome-extensions", "install", "--force"]
        assert install[3].endswith(f"{UUID}.zip")
        assert runner.commands[-1][-1] == f"['appindicatorsupport@rgcjonas.gmail.com', '{UUID}']"
        assert list(scratch.iterdir()) == []

    def test_lookup_miss(self, tmp_path):
        scratch = tmp_path / "scratch"
        downloader = _writer()
        provider = self._provider(FakeSite(search={"extensions": []}), downloader)

        result = provider.apply(_ctx("gnome_extension", self.SPEC, scratch))

        assert result.error_kind == ErrorKind.NOT_FOUND
        assert result.detail.startswith("step 1 (lookup)")
        assert downloader.calls == []
        assert list(scratch.iterdir()) == []

    def test_malformed_search_entry_is_lookup_miss(self, tmp_path):
        site = FakeSite(search={"extensions": [{"uuid": UUID, "pk": "not-a-number"}]})
        result = self._provider(site).apply(_ctx("gnome_extension", self.SPEC, tmp_path))
        assert result.error_kind == ErrorKind.NOT_FOUND
        assert result.detail.startswith("step 1 (lookup)")

    def test_no_release_for_shell(self, tmp_path):
        result = self._provider(FakeSite(info={})).apply(_ctx("gnome_extension", self.SPEC, tmp_path))
        assert result.error_kind == ErrorKind.NOT_FOUND
        assert result.detail.startswith("step 2 (resolve)")
        assert "GNOME Shell 48" in result.detail

    def test_network_down(self, tmp_path):
        site = FakeSite(error=http.RemoteError(ErrorKind.NETWORK_UNAVAILABLE, "no route"))
        result = self._provider(site).apply(_ctx("gnome_extension", self.SPEC, tmp_path))
        assert result.error_kind == ErrorKind.NETWORK_UNAVAILABLE
        assert "step 1" in result.detail

    def test_download_failure(self, tmp_path):
        def broken(url, dest, timeout=300):
            raise http.RemoteError(ErrorKind.NETWORK_UNAVAILABLE, "reset")

        result = self._provider(downloader=broken).apply(_ctx("gnome_extension", self.SPEC, tmp_path))
        assert result.error_kind == ErrorKind.NETWORK_UNAVAILABLE
        assert result.detail.startswith("step 3 (download)")
        assert list(tmp_path.iterdir()) == []

    def test_install_failure(self, tmp_path):
        runner = ScriptedRunner({r"gnome-extensions install": fail("error: bad zip")})
        result = self._provider(runner=runner).apply(_ctx("gnome_extension", self.SPEC, tmp_path))
        assert not result.ok
        assert result.detail.startswith("step 4 (install)")
        assert list(tmp_path.iterdir()) == []

    def test_missing_shell_version(self, tmp_path):
        site = FakeSite()
        result = self._provider(site).apply(_ctx("gnome_extension", {"uuid": UUID}, tmp_path))
        assert result.error_kind == ErrorKind.NOT_FOUND
        assert "GNOME Shell version" in result.detail
        assert site.urls == []

    def test_query(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        uuid = "converge-test@example.org"
        runner = ScriptedRunner({r"gsettings get": ok(f"['{uuid}']\n")})
        provider = GnomeExtensionProvider(fetch_json=FakeSite(), downloader=_writer(), runner=runner)
        ctx = _ctx("gnome_extension", {"uuid": uuid, "shell_version": "48"})

        assert provider.query(ctx) == QueryState.UNSATISFIED
        (tmp_path / ".local/share/gnome-shell/extensions" / uuid).mkdir(parents=True)
        assert provider.query(ctx) == QueryState.SATISFIED


# ── Downloads ────────────────────────────────────────────────────────


class TestDownloadProvider:
    PAYLOAD = b"#!/bin/sh\necho neofetch\n"

    def test_install_to_dest(self, tmp_path):
        dest = tmp_path / "bin" / "neofetch"
        spec = {"url": "https://example.org/neofetch", "dest": str(dest)}
        provider = DownloadProvider(downloader=_writer(self.PAYLOAD))
        ctx = _ctx("download", spec, tmp_path / "scratch")

        assert provider.query(ctx) == QueryState.UNSATISFIED
        result = provider.apply(ctx)
        assert result.ok, result.detail
        assert dest.read_bytes() == self.PAYLOAD
        assert dest.stat().st_mode & 0o777 == 0o755
        assert provider.query(ctx) == QueryState.SATISFIED
        assert list((tmp_path / "scratch").iterdir()) == []

    def test_checksum(self, tmp_path):
        digest = hashlib.sha256(self.PAYLOAD).hexdigest()
        dest = tmp_path / "neofetch"
        good = {"url": "https://example.org/neofetch", "dest": str(dest), "checksum": f"sha256:{digest}"}
        bad = {**good, "checksum": "sha256:" + "0" * 64}

        provider = DownloadProvider(downloader=_writer(self.PAYLOAD))
        failed = provider.apply(_ctx("download", bad, tmp_path))
        assert failed.error_kind == ErrorKind.EXTERNAL_TOOL_FAILED
        assert "checksum mismatch" in failed.detail
        assert not dest.exists()

        assert provider.apply(_ctx("download", good, tmp_path)).ok
        assert verify_checksum(dest, f"sha256:{digest.upper()}")

    def test_run_script(self, tmp_path):
        marker = tmp_path / "installed"
        spec = {
            "url": "https://example.org/install.sh",
            "run": f"sh {{path}} > {marker}",
            "creates": str(marker),
        }
        provider = DownloadProvider(downloader=_writer(self.PAYLOAD))
        ctx = _ctx("download", spec, tmp_path / "scratch")
        assert provider.apply(ctx).ok
        assert marker.read_text() == "neofetch\n"
        assert provider.query(ctx) == QueryState.SATISFIED

    def test_network_failure(self, tmp_path):
        def broken(url, dest, timeout=300):
            raise http.RemoteError(ErrorKind.NETWORK_UNAVAILABLE, f"{url}: unreachable")

        result = DownloadProvider(downloader=broken).apply(
            _ctx("download", {"url": "https://example.org/x", "dest": str(tmp_path / "x")}, tmp_path / "s")
        )
        assert result.error_kind == ErrorKind.NETWORK_UNAVAILABLE

    @pytest.mark.parametrize(
        "spec, message",
        [
            ({"url": "u"}, "'dest' or a 'run'"),
            ({"url": "u", "run": "sh {path}"}, "guard"),
            ({"url": "u", "dest": "/x", "checksum": "nohash"}, "Invalid checksum"),
            ({"url": "u", "dest": "/x", "mode": "wx"}, "Invalid mode"),
        ],
    )
    def test_validate(self, spec, message):
        valid, msg = DownloadProvider().validate(_ctx("download", spec))
        assert not valid
        assert message in msg


# ── Git checkouts ────────────────────────────────────────────────────


class TestGitCheckoutProvider:
    REPO = "https://github.com/zsh-users/zsh-autosuggestions.git"

    def test_clone(self, tmp_path, monkeypatch):
        runner = ScriptedRunner()
        monkeypatch.setattr("converge.providers.vcs.git.run_command", runner)
        dest = tmp_path / "plugins" / "zsh-autosuggestions"

        result = GitCheckoutProvider().apply(_ctx("git_checkout", {"repo": self.REPO, "dest": str(dest), "branch": "master"}))

        assert result.ok
        assert runner.commands[0] == ["git", "clone", "--depth", "1", "--branch", "master", self.REPO, str(dest)]

    def test_existing_checkout_is_satisfied(self, tmp_path, monkeypatch):
        dest = tmp_path / "zsh-autosuggestions"
        (dest / ".git").mkdir(parents=True)
        runner = ScriptedRunner({r"remote get-url origin": ok("https://github.com/zsh-users/zsh-autosuggestions\n")})
        monkeypatch.setattr("converge.providers.vcs.git.run_command", runner)

        ctx = _ctx("git_checkout", {"repo": self.REPO, "dest": str(dest)})
        assert GitCheckoutProvider().query(ctx) == QueryState.SATISFIED

    def test_refuses_foreign_directory(self, tmp_path, monkeypatch):
        runner = ScriptedRunner()
        monkeypatch.setattr("converge.providers.vcs.git.run_command", runner)
        dest = tmp_path / "taken"
        dest.mkdir()
        (dest / "notes.txt").write_text("mine")

        result = GitCheckoutProvider().apply(_ctx("git_checkout", {"repo": self.REPO, "dest": str(dest)}))

        assert result.error_kind == ErrorKind.EXTERNAL_TOOL_FAILED
        assert "refusing to overwrite" in result.detail
        assert runner.commands == []
        assert (dest / "notes.txt").read_text() == "mine"

    def test_run_in_scratch(self, tmp_path, monkeypatch):
        runner = ScriptedRunner()
        monkeypatch.setattr("converge.providers.vcs.git.run_command", runner)
        spec = {
            "repo": "https://github.com/vinceliuice/WhiteSur-gtk-theme.git",
            "run": "./install.sh -l",
            "creates": str(tmp_path / ".themes" / "WhiteSur-Dark"),
        }
        scratch = tmp_path / "scratch"

        result = GitCheckoutProvider().apply(_ctx("git_checkout", spec, scratch))

        assert result.ok
        assert runner.commands[1] == ["sh", "-c", "./install.sh -l"]
        assert list(scratch.iterdir()) == []

    def test_clone_failure(self, tmp_path, monkeypatch):
        runner = ScriptedRunner({r"^git clone": fail("fatal: unable to access 'https://github.com/': Could not resolve host", 128)})
        monkeypatch.setattr("converge.providers.vcs.git.run_command", runner)
        result = GitCheckoutProvider().apply(_ctx("git_checkout", {"repo": self.REPO, "dest": str(tmp_path / "d")}))
        assert result.error_kind == ErrorKind.NETWORK_UNAVAILABLE

    def test_validate(self):
        valid, msg = GitCheckoutProvider().validate(_ctx("git_checkout", {"repo": self.REPO, "run": "make"}))
        assert not valid
        assert "creates" in msg
