# tests/integration/pipeline/test_int_scan.py — v1
"""Integration tests for full scans: walker, hash pool, gate, emitter, sink.

Real files on tmp_path, real thread pools, in-memory sink. No network.
"""

from __future__ import annotations

import hashlib
import io
import os
import tarfile
import tempfile
import uuid
import zipfile
from pathlib import Path

import pytest

from catalogscan.core.models import (
    ArchiveDecision,
    ErrorKind,
    ProjectIdentity,
    ProjectType,
    ScanOutcome,
)
from catalogscan.hashing.hasher import ContentHasher
from catalogscan.metadata.extractor import MetadataExtractor
from catalogscan.pipeline.orchestrator import ScanOrchestrator
from catalogscan.pipeline.state import CancellationToken
from catalogscan.projects.scanner import content_digest
from catalogscan.sinks.retry import RetryingSink, RetryPolicy, SinkError


def _scan(settings, sink, prompt, probe, **kwargs) -> ScanOrchestrator:
    return ScanOrchestrator(settings, sink, prompt, probe=probe, **kwargs)


def _zip(path: Path, members: dict[str, str]) -> Path:
    with zipfile.ZipFile(path, "w") as zf:
        for name, content in members.items():
            zf.writestr(name, content)
    return path


class _CountingRich:
    def __init__(self) -> None:
        self.calls: list[str] = []

    def __call__(self, path: Path):
        self.calls.append(path.name)
        return None


class TestAbcExample:
    @pytest.mark.asyncio
    async def test_three_records_two_batches(self, settings, recording_sink, recording_prompt, no_probe, abc_tree):
        summary = await _scan(settings, recording_sink, recording_prompt, no_probe).run(abc_tree)

        assert summary.outcome is ScanOutcome.SUCCESS
        assert summary.succeeded == 3
        assert summary.failed == 0
        assert [b.batch_number for b in recording_sink.batches] == [1, 2]
        assert [len(b.files) for b in recording_sink.batches] == [2, 1]

        records = {r.path: r for r in recording_sink.records()}
        assert set(records) == {"a.txt", "b.txt", "c.txt"}
        assert records["a.txt"].digest == records["b.txt"].digest
        assert [records["a.txt"].duplicate, records["b.txt"].duplicate].count(True) == 1
        assert records["c.txt"].duplicate is False


class TestExactlyOnce:
    @pytest.mark.asyncio
    async def test_every_file_once(self, settings, recording_sink, recording_prompt, no_probe, tmp_path):
        root = tmp_path / "root"
        expected = set()
        for d in range(4):
            sub = root / f"dir{d}" / "nested"
            sub.mkdir(parents=True)
            for f in range(6):
                (sub / f"f{f}.bin").write_bytes(os.urandom(32) if f % 2 else b"same")
                expected.add(f"dir{d}/nested/f{f}.bin")

        summary = await _scan(settings, recording_sink, recording_prompt, no_probe).run(root)

        records = recording_sink.records()
        assert sorted(r.path for r in records) == sorted(expected)
        assert len({r.id for r in records}) == len(records)
        assert summary.attempted == summary.succeeded + summary.failed == len(expected)
        assert summary.totals.files_discovered == len(expected)

    @pytest.mark.asyncio
    async def test_batches_gapless(self, settings, recording_sink, recording_prompt, no_probe, tmp_path):
        root = tmp_path / "root"
        root.mkdir()
        for i in range(11):
            (root / f"{i:02d}.txt").write_text(str(i))
        summary = await _scan(settings, recording_sink, recording_prompt, no_probe).run(root)

        numbers = [b.batch_number for b in recording_sink.batches]
        assert numbers == list(range(1, 7))
        assert summary.batches_emitted == 6
        assert all(len(b.files) == 2 for b in recording_sink.batches[:-1])


class TestHashing:
    @pytest.mark.asyncio
    async def test_digest_matches_sha256_across_runs(self, settings, make_sink, recording_prompt, no_probe, abc_tree):
        first, second = make_sink(), make_sink()
        await _scan(settings, first, recording_prompt, no_probe).run(abc_tree)
        await _scan(settings, second, recording_prompt, no_probe).run(abc_tree)

        digests_1 = {r.path: r.digest for r in first.records()}
        digests_2 = {r.path: r.digest for r in second.records()}
        assert digests_1 == digests_2
        assert digests_1["c.txt"] == hashlib.sha256(b"bye").hexdigest()


class TestExifGate:
    def _tree(self, tmp_path: Path) -> Path:
        root = tmp_path / "photos"
        root.mkdir()
        for i in range(4):
            (root / f"copy{i}.jpg").write_bytes(b"identical image bytes")
        (root / "other.jpg").write_bytes(b"different image bytes")
        (root / "notes.txt").write_text("not an image")
        return root

    @pytest.mark.asyncio
    async def test_rich_once_per_content(self, settings, recording_sink, recording_prompt, no_probe, tmp_path):
        rich = _CountingRich()
        orch = _scan(
            settings, recording_sink, recording_prompt, no_probe,
            extractor=MetadataExtractor(rich_extractor=rich),
        )
        await orch.run(self._tree(tmp_path))
        assert len(rich.calls) == 2
        assert "notes.txt" not in rich.calls

    @pytest.mark.asyncio
    async def test_rich_for_every_copy_when_gate_off(self, settings, recording_sink, recording_prompt, no_probe, tmp_path):
        rich = _CountingRich()
        always = settings.model_copy(update={"metadata_skip_exif_on_duplicate": False})
        orch = _scan(
            always, recording_sink, recording_prompt, no_probe,
            extractor=MetadataExtractor(rich_extractor=rich),
        )
        await orch.run(self._tree(tmp_path))
        assert len(rich.calls) == 5

    @pytest.mark.asyncio
    async def test_rich_disabled(self, settings, recording_sink, recording_prompt, no_probe, tmp_path):
        rich = _CountingRich()
        orch = _scan(
            settings, recording_sink, recording_prompt, no_probe,
            extractor=MetadataExtractor(extract_rich=False, rich_extractor=rich),
        )
        await orch.run(self._tree(tmp_path))
        assert rich.calls == []


class TestErrors:
    @pytest.mark.asyncio
    async def test_unreadable_directory(self, settings, recording_sink, recording_prompt, no_probe, abc_tree, monkeypatch):
        locked = abc_tree / "locked"
        locked.mkdir()
        (locked / "secret.txt").write_text("x")
        real_scandir = os.scandir

        def _scandir(path):
            if Path(path).name == "locked":
                raise PermissionError(13, "Permission denied", str(path))
            return real_scandir(path)

        monkeypatch.setattr("catalogscan.discovery.walker.os.scandir", _scandir)
        summary = await _scan(settings, recording_sink, recording_prompt, no_probe).run(abc_tree)

        assert summary.outcome is ScanOutcome.PARTIAL
        assert summary.succeeded == 3
        assert summary.error_count == 1
        assert summary.errors[0].kind is ErrorKind.DIRECTORY_UNREADABLE
        assert summary.errors[0].path == "locked"
        assert "secret.txt" not in {r.name for r in recording_sink.records()}

    @pytest.mark.asyncio
    async def test_file_vanishes(self, settings, recording_sink, recording_prompt, no_probe, abc_tree):
        class _VanishingHasher(ContentHasher):
            def hash_file(self, path, on_progress=None):
                if Path(path).name == "b.txt":
                    os.unlink(path)
                return super().hash_file(path, on_progress)

        summary = await _scan(
            settings, recording_sink, recording_prompt, no_probe, hasher=_VanishingHasher()
        ).run(abc_tree)

        assert summary.outcome is ScanOutcome.PARTIAL
        assert summary.attempted == 3
        assert summary.failed == 1
        assert summary.errors[0].kind is ErrorKind.NOT_FOUND
        assert summary.errors[0].path == "b.txt"
        assert {r.path for r in recording_sink.records()} == {"a.txt", "c.txt"}

    @pytest.mark.asyncio
    async def test_copy_vanishing_after_hash_is_not_first_seen(self, settings, recording_sink, recording_prompt, no_probe, abc_tree):
        class _UnlinkAfterHash(ContentHasher):
            def hash_file(self, path, on_progress=None):
                digest = super().hash_file(path, on_progress)
                if Path(path).name == "a.txt":
                    os.unlink(path)
                return digest

        serial = settings.model_copy(update={"scan_threads": 1})
        summary = await _scan(
            serial, recording_sink, recording_prompt, no_probe, hasher=_UnlinkAfterHash()
        ).run(abc_tree)

        records = {r.path: r for r in recording_sink.records()}
        assert set(records) == {"b.txt", "c.txt"}
        assert records["b.txt"].duplicate is False
        assert summary.failed == 1
        assert summary.errors[0].path == "a.txt"
        assert summary.errors[0].kind is ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_sink_down_fails_scan(self, settings, make_sink, recording_prompt, no_probe, tmp_path):
        root = tmp_path / "root"
        root.mkdir()
        for i in range(5):
            (root / f"{i}.txt").write_text(str(i))
        inner = make_sink(fail_batches=1000)
        sink = RetryingSink(inner, RetryPolicy(max_attempts=2, base_delay_s=0.0, jitter=False))

        summary = await _scan(settings, sink, recording_prompt, no_probe).run(root)

        assert summary.outcome is ScanOutcome.FAILED
        assert "SinkUnavailableError" in summary.error_message
        assert inner.batches == []
        assert summary.lost_records == summary.succeeded
        assert summary.lost_records >= 2
        assert len(inner.completed) == 1

    @pytest.mark.asyncio
    async def test_sink_recovers_before_close(self, settings, make_sink, recording_prompt, no_probe, abc_tree):
        inner = make_sink(fail_batches=2)
        sink = RetryingSink(inner, RetryPolicy(max_attempts=2, base_delay_s=0.0, jitter=False))

        summary = await _scan(settings, sink, recording_prompt, no_probe).run(abc_tree)

        assert summary.outcome is ScanOutcome.FAILED
        assert summary.lost_records == 0
        assert [b.batch_number for b in inner.batches] == [1, 2]


class TestArchives:
    @pytest.fixture
    def archive_settings(self, settings):
        return settings.model_copy(update={"archive_prompt_threshold": 10})

    @pytest.fixture
    def archive_tree(self, tmp_path) -> Path:
        root = tmp_path / "disk"
        root.mkdir()
        (root / "a.txt").write_text("hi")
        _zip(root / "backup.zip", {"inner/x.txt": "inside x", "inner/dup.txt": "hi"})
        return root

    @pytest.mark.asyncio
    async def test_postpone(self, archive_settings, recording_sink, recording_prompt, no_probe, archive_tree):
        summary = await _scan(
            archive_settings, recording_sink, recording_prompt, no_probe
        ).run(archive_tree)

        assert summary.outcome is ScanOutcome.SUCCESS
        assert summary.postponed_archives == 1
        assert len(recording_prompt.asked) == 1

        parent = recording_sink.sources[summary.source_id]
        [child] = [s for s in recording_sink.sources.values() if s.id != parent.id]
        assert child.postponed is True
        assert child.status == "postponed"
        assert child.type == "archive_zip"
        assert child.parent_source_id == parent.id

        records = {r.path: r for r in recording_sink.records()}
        assert set(records) == {"a.txt", "backup.zip"}
        assert records["backup.zip"].archive_source_id == child.id
        assert records["backup.zip"].source_id == parent.id
        assert records["a.txt"].archive_source_id is None

    @pytest.mark.asyncio
    async def test_small_archive_is_ordinary(self, settings, recording_sink, recording_prompt, no_probe, archive_tree):
        summary = await _scan(settings, recording_sink, recording_prompt, no_probe).run(archive_tree)
        assert recording_prompt.asked == []
        assert summary.postponed_archives == 0
        assert len(recording_sink.sources) == 1

    @pytest.mark.asyncio
    async def test_auto_postpone_rest(self, archive_settings, recording_sink, make_prompt, no_probe, archive_tree):
        _zip(archive_tree / "second.zip", {"y.txt": "why not a longer file"})
        prompt = make_prompt(ArchiveDecision.AUTO_POSTPONE_REST)

        summary = await _scan(archive_settings, recording_sink, prompt, no_probe).run(archive_tree)

        assert len(prompt.asked) == 1
        assert summary.postponed_archives == 2
        assert sum(1 for s in recording_sink.sources.values() if s.postponed) == 2

    @pytest.mark.asyncio
    async def test_auto_postpone_pattern_skips_prompt(self, archive_settings, recording_sink, recording_prompt, no_probe, tmp_path):
        root = tmp_path / "disk"
        root.mkdir()
        (root / "machine.vmdk").write_bytes(b"\0" * 64)

        summary = await _scan(
            archive_settings, recording_sink, recording_prompt, no_probe
        ).run(root)

        assert recording_prompt.asked == []
        assert summary.postponed_archives == 1

    @pytest.mark.asyncio
    async def test_scan_now_nested(self, archive_settings, recording_sink, make_prompt, no_probe, archive_tree):
        prompt = make_prompt(ArchiveDecision.SCAN_NOW)

        summary = await _scan(archive_settings, recording_sink, prompt, no_probe).run(archive_tree)

        assert summary.outcome is ScanOutcome.SUCCESS
        assert len(summary.nested) == 1
        nested = summary.nested[0]
        assert nested.outcome is ScanOutcome.SUCCESS
        assert nested.succeeded == 2

        child = recording_sink.sources[nested.source_id]
        assert child.parent_source_id == summary.source_id
        assert child.type == "archive_zip"
        assert child.root_path == str(archive_tree / "backup.zip")

        inner = {r.path: r for r in recording_sink.records(child.id)}
        assert set(inner) == {"inner/x.txt", "inner/dup.txt"}
        assert inner["inner/dup.txt"].duplicate is True
        assert {r.path for r in recording_sink.records(summary.source_id)} == {"a.txt", "backup.zip"}
        assert [s.source_id for _, s in recording_sink.completed] == [
            nested.source_id, summary.source_id,
        ]

    @pytest.mark.asyncio
    async def test_scan_now_corrupt_archive(self, archive_settings, recording_sink, make_prompt, no_probe, tmp_path):
        root = tmp_path / "disk"
        root.mkdir()
        (root / "broken.zip").write_bytes(b"PK this is not a zip file at all")

        summary = await _scan(
            archive_settings, recording_sink, make_prompt(ArchiveDecision.SCAN_NOW), no_probe
        ).run(root)

        assert summary.outcome is ScanOutcome.PARTIAL
        assert summary.errors[0].kind is ErrorKind.ARCHIVE_ERROR
        assert summary.succeeded == 1
        assert summary.nested == []

    @pytest.mark.asyncio
    async def test_scan_now_rejects_member_escaping_extraction_dir(self, archive_settings, recording_sink, make_prompt, no_probe, tmp_path):
        root = tmp_path / "disk"
        root.mkdir()
        escape_name = f"catalogscan-escape-{uuid.uuid4().hex}.txt"
        payload = b"written next to the extraction directory"
        with tarfile.open(root / "evil.tar", "w") as tf:
            info = tarfile.TarInfo(f"../{escape_name}")
            info.size = len(payload)
            tf.addfile(info, io.BytesIO(payload))

        summary = await _scan(
            archive_settings, recording_sink, make_prompt(ArchiveDecision.SCAN_NOW), no_probe
        ).run(root)

        assert not (Path(tempfile.gettempdir()) / escape_name).exists()
        assert not (tmp_path / escape_name).exists()
        assert summary.outcome is ScanOutcome.PARTIAL
        assert [e.kind for e in summary.errors] == [ErrorKind.ARCHIVE_ERROR]
        assert summary.errors[0].path == "evil.tar"
        assert summary.nested == []
        assert {r.path for r in recording_sink.records()} == {"evil.tar"}

    @pytest.mark.asyncio
    async def test_scan_now_tar_nested(self, archive_settings, recording_sink, make_prompt, no_probe, tmp_path):
        root = tmp_path / "disk"
        root.mkdir()
        payload = b"inside the tarball"
        with tarfile.open(root / "docs.tar.gz", "w:gz") as tf:
            info = tarfile.TarInfo("docs/readme.txt")
            info.size = len(payload)
            tf.addfile(info, io.BytesIO(payload))
        settings = archive_settings.model_copy(update={"archive_prompt_threshold": 0})

        summary = await _scan(
            settings, recording_sink, make_prompt(ArchiveDecision.SCAN_NOW), no_probe
        ).run(root)

        assert summary.outcome is ScanOutcome.SUCCESS
        [nested] = summary.nested
        assert [r.path for r in recording_sink.records(nested.source_id)] == ["docs/readme.txt"]
        assert recording_sink.sources[nested.source_id].type == "archive_tar"


class TestCodeProjects:
    @pytest.fixture
    def code_tree(self, tmp_path) -> Path:
        root = tmp_path / "disk"
        app = root / "work" / "app"
        (app / "node_modules" / "left-pad").mkdir(parents=True)
        (app / "lib").mkdir()
        (app / "package.json").write_text('{"name": "app"}')
        (app / "index.js").write_text("console.log('app')")
        (app / "lib" / "pyproject.toml").write_text("[project]\nname = 'inner'")
        (app / "node_modules" / "left-pad" / "index.js").write_text("module.exports = 1")
        tools = root / "tools"
        tools.mkdir()
        (tools / "pyproject.toml").write_text("[project]\nname = 'tools'")
        (tools / "main.py").write_text("print('tools')")
        (tools / "NOTES.txt").write_text("release notes")
        (root / "photos").mkdir()
        (root / "photos" / "a.txt").write_text("caption")
        return root

    @pytest.mark.asyncio
    async def test_projects_detected_after_scan(self, settings, recording_sink, recording_prompt, no_probe, code_tree):
        summary = await _scan(settings, recording_sink, recording_prompt, no_probe).run(code_tree)

        projects = {p.root_path: p for p in recording_sink.code_projects}
        assert set(projects) == {"tools", "work/app"}
        assert summary.code_projects == 2
        assert summary.outcome is ScanOutcome.SUCCESS

        digests = {r.path: r.digest for r in recording_sink.records()}
        app = projects["work/app"]
        assert app.identity.type is ProjectType.NPM
        assert app.source_id == summary.source_id
        assert app.total_file_count == 3
        assert app.source_file_count == 3
        assert app.content_digest == content_digest([
            digests["work/app/package.json"],
            digests["work/app/index.js"],
            digests["work/app/lib/pyproject.toml"],
        ])

        tools = projects["tools"]
        assert tools.identity.type is ProjectType.PYTHON
        assert tools.total_file_count == 3
        assert tools.source_file_count == 2
        names = ("pyproject.toml", "main.py", "NOTES.txt")
        assert tools.total_size == sum((code_tree / "tools" / n).stat().st_size for n in names)

    @pytest.mark.asyncio
    async def test_copies_share_content_digest(self, settings, recording_sink, recording_prompt, no_probe, code_tree):
        backup = code_tree / "backup" / "tools"
        backup.mkdir(parents=True)
        for name in ("pyproject.toml", "main.py"):
            (backup / name).write_bytes((code_tree / "tools" / name).read_bytes())

        await _scan(settings, recording_sink, recording_prompt, no_probe).run(code_tree)

        projects = {p.root_path: p for p in recording_sink.code_projects}
        assert projects["backup/tools"].content_digest == projects["tools"].content_digest
        assert projects["backup/tools"].total_file_count == 2

    @pytest.mark.asyncio
    async def test_injected_detectors_replace_defaults(self, settings, recording_sink, recording_prompt, no_probe, code_tree):
        class _ManifestDetector:
            priority = 1

            def can_detect(self, folder):
                return (folder / "MANIFEST").is_file()

            def detect(self, folder):
                return ProjectIdentity(
                    type=ProjectType.GENERIC, name=folder.name, identifier=f"manifest:{folder.name}"
                )

        (code_tree / "photos" / "MANIFEST").write_text("album")

        summary = await _scan(
            settings, recording_sink, recording_prompt, no_probe,
            project_detectors=[_ManifestDetector()],
        ).run(code_tree)

        assert [p.root_path for p in recording_sink.code_projects] == ["photos"]
        assert recording_sink.code_projects[0].identity.identifier == "manifest:photos"
        assert summary.code_projects == 1

    @pytest.mark.asyncio
    async def test_disabled(self, settings, recording_sink, recording_prompt, no_probe, code_tree):
        off = settings.model_copy(update={"scan_code_projects": False})
        summary = await _scan(off, recording_sink, recording_prompt, no_probe).run(code_tree)
        assert recording_sink.code_projects == []
        assert summary.code_projects == 0

    @pytest.mark.asyncio
    async def test_sink_down_fails_scan(
        self, settings, recording_sink, recording_prompt, no_probe, code_tree, monkeypatch
    ):
        async def _refuse(source_id, projects):
            raise SinkError("projects endpoint refused", transient=False)

        monkeypatch.setattr(recording_sink, "submit_code_projects", _refuse)
        inner = recording_sink
        sink = RetryingSink(inner, RetryPolicy(max_attempts=1, base_delay_s=0.0, jitter=False))

        summary = await _scan(settings, sink, recording_prompt, no_probe).run(code_tree)

        assert summary.outcome is ScanOutcome.FAILED
        assert "submit_code_projects" in summary.error_message
        assert len(inner.records()) == summary.succeeded


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_scan(self, settings, recording_sink, recording_prompt, no_probe, tmp_path):
        root = tmp_path / "root"
        root.mkdir()
        for i in range(50):
            (root / f"{i:03d}.txt").write_text(str(i))
        token = CancellationToken()

        class _CancellingHasher(ContentHasher):
            def hash_file(self, path, on_progress=None):
                token.cancel("test stop")
                return super().hash_file(path, on_progress)

        summary = await _scan(
            settings, recording_sink, recording_prompt, no_probe,
            cancel_token=token, hasher=_CancellingHasher(),
        ).run(root)

        assert summary.cancelled is True
        assert summary.outcome is ScanOutcome.FAILED
        assert summary.attempted < 50
        assert summary.attempted == summary.succeeded
        assert len(recording_sink.records()) == summary.succeeded
        assert recording_sink.completed[0][0].status == "failed"


@pytest.mark.stress
class TestConcurrency:
    @pytest.mark.asyncio
    async def test_identical_files_single_first_seen(self, settings, recording_sink, recording_prompt, no_probe, tmp_path):
        root = tmp_path / "same"
        root.mkdir()
        for i in range(200):
            (root / f"{i:03d}.jpg").write_bytes(b"identical")
        rich = _CountingRich()
        busy = settings.model_copy(update={"scan_threads": 8, "scan_batch_size": 7})

        summary = await _scan(
            busy, recording_sink, recording_prompt, no_probe,
            extractor=MetadataExtractor(rich_extractor=rich),
        ).run(root)

        records = recording_sink.records()
        assert len(records) == 200
        assert sum(1 for r in records if not r.duplicate) == 1
        assert len(rich.calls) == 1
        assert [b.batch_number for b in recording_sink.batches] == list(range(1, 30))
        assert summary.succeeded == 200
