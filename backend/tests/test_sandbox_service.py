"""Tests for sandbox_service.py -- SandboxService orchestration.

Runs complete create / file / package / stop scenarios against the in-memory
FakeEngine from conftest. No Docker daemon is needed.
"""

import asyncio
import io
import json
import zipfile

import pytest

from config import settings
from models.schemas import SandboxStatus
from sandbox.engine import CommandResult
from sandbox.errors import (
    BuildFailureError,
    EngineCommandError,
    EngineUnavailableError,
    LaunchFailureError,
    ResourceExhaustionError,
    SandboxError,
    SandboxNotFoundError,
    SyncFailureError,
)
from sandbox.images import ImageBuilder
from sandbox.ports import PortAllocator
from sandbox.runtime import SandboxRuntimeManager
from sandbox.sync import FileInfo, FileSyncBridge
from sandbox_service import (
    DEFAULT_PACKAGE,
    CreatedSandbox,
    SandboxService,
    build_file_tree,
)
from tests.conftest import PROJECT, SOURCE_ROOT, FakeEngine

APP_FILES = {
    "package.json": json.dumps({"name": "app", "version": "1.0.0"}),
    "pages/index.tsx": "export default function Home() { return null }",
    "components/ui/Button.tsx": "export const Button = () => null",
    "styles/globals.css": "body { margin: 0 }",
}


@pytest.fixture()
async def app_sandbox(service: SandboxService) -> CreatedSandbox:
    """A running sandbox seeded with APP_FILES."""
    return await service.create_sandbox(APP_FILES)


# =========================================================================
# create_sandbox
# =========================================================================


class TestCreateSandbox:
    """SandboxService.create_sandbox()."""

    async def test_default_app(self, service: SandboxService, fake_engine: FakeEngine) -> None:
        created = await service.create_sandbox()

        assert created.port == 8000
        assert created.url == "http://localhost:8000"
        assert created.status == SandboxStatus.RUNNING
        assert fake_engine.built[0][1] == f"dec-nextjs-{created.sandbox_id}"

        page = fake_engine.read_container_file(
            created.instance_id, f"{SOURCE_ROOT}/pages/index.tsx"
        )
        assert page is not None and "Welcome to December!" in page
        manifest = fake_engine.read_container_file(
            created.instance_id, f"{SOURCE_ROOT}/package.json"
        )
        assert manifest is not None
        assert json.loads(manifest) == DEFAULT_PACKAGE

    async def test_container_labels(
        self, service: SandboxService, fake_engine: FakeEngine
    ) -> None:
        created = await service.create_sandbox()

        labels = fake_engine.run_calls[0]["labels"]
        assert labels["sandboxId"] == created.sandbox_id
        assert labels["assignedPort"] == str(created.port)
        assert fake_engine.run_calls[0]["image"] == f"dec-nextjs-{created.sandbox_id}"

    async def test_two_sandboxes_get_distinct_ports(self, service: SandboxService) -> None:
        a, b = await asyncio.gather(service.create_sandbox(), service.create_sandbox())
        assert a.port != b.port
        assert a.sandbox_id != b.sandbox_id

    async def test_launch_failure_removes_image(
        self, service: SandboxService, fake_engine: FakeEngine
    ) -> None:
        fake_engine.run_error = EngineCommandError("port is already allocated")

        with pytest.raises(LaunchFailureError):
            await service.create_sandbox()

        image = fake_engine.built[0][1]
        assert fake_engine.removed_images == [image]
        assert image not in fake_engine.images
        assert service.runtime.allocator.reserved == frozenset()

    async def test_build_failure_starts_nothing(
        self, service: SandboxService, fake_engine: FakeEngine
    ) -> None:
        fake_engine.build_error = BuildFailureError(
            "Image build failed", image="dec-nextjs-x", build_log="npm ERR!"
        )

        with pytest.raises(BuildFailureError):
            await service.create_sandbox()

        assert fake_engine.run_calls == []
        assert service.runtime.allocator.reserved == frozenset()

    async def test_invalid_files_rejected_before_build(
        self, service: SandboxService, fake_engine: FakeEngine
    ) -> None:
        with pytest.raises(ValueError, match="Invalid path"):
            await service.create_sandbox({"../outside.js": "x"})
        assert fake_engine.built == []

    async def test_window_exhaustion_removes_image(
        self,
        fake_engine: FakeEngine,
        builder: ImageBuilder,
        sync_bridge: FileSyncBridge,
        staging_root: str,
    ) -> None:
        allocator = PortAllocator(
            fake_engine,  # type: ignore[arg-type]
            base_port=8000,
            window=2,
            project_label=PROJECT,
            probe=lambda port: False,
        )
        runtime = SandboxRuntimeManager(
            fake_engine,  # type: ignore[arg-type]
            allocator,
            project_label=PROJECT,
            staging_root=staging_root,
        )
        service = SandboxService(runtime, builder, sync_bridge)

        with pytest.raises(ResourceExhaustionError):
            await service.create_sandbox()

        assert fake_engine.run_calls == []
        assert fake_engine.removed_images == [fake_engine.built[0][1]]


# =========================================================================
# Lookup, listing and stop
# =========================================================================


class TestLookupAndStop:
    """get_sandbox(), list_sandboxes() and stop_sandbox()."""

    async def test_get_by_sandbox_id(
        self, service: SandboxService, app_sandbox: CreatedSandbox
    ) -> None:
        summary = await service.get_sandbox(app_sandbox.sandbox_id)

        assert summary.id == app_sandbox.instance_id
        assert summary.port == app_sandbox.port
        assert summary.status == SandboxStatus.RUNNING

    async def test_get_not_found(self, service: SandboxService) -> None:
        with pytest.raises(SandboxNotFoundError, match="Container not found: nope"):
            await service.get_sandbox("nope")

    async def test_scenario_stop_removes_from_listing(
        self, service: SandboxService, fake_engine: FakeEngine
    ) -> None:
        a = await service.create_sandbox()
        b = await service.create_sandbox()

        listed = {s.id: s for s in await service.list_sandboxes()}
        assert listed[a.instance_id].status == SandboxStatus.RUNNING
        assert listed[a.instance_id].port == a.port

        await service.stop_sandbox(a.instance_id)

        remaining = [s.id for s in await service.list_sandboxes()]
        assert remaining == [b.instance_id]
        with pytest.raises(SandboxNotFoundError):
            await service.stop_sandbox(a.instance_id)


# =========================================================================
# Files
# =========================================================================


class TestFiles:
    """list_files(), file_tree(), file_content_tree(), read and write."""

    async def test_list_files_filters_extensions(
        self, service: SandboxService, app_sandbox: CreatedSandbox
    ) -> None:
        files = await service.list_files(app_sandbox.instance_id)

        assert {f.path for f in files} == {
            "components/ui/Button.tsx",
            "package.json",
            "pages/index.tsx",
        }
        assert all(not f.is_directory for f in files)

    async def test_list_files_accepts_source_root_path(
        self, service: SandboxService, app_sandbox: CreatedSandbox
    ) -> None:
        files = await service.list_files(app_sandbox.instance_id, f"{SOURCE_ROOT}/pages")
        assert [f.path for f in files] == ["pages/index.tsx"]

        everything = await service.list_files(app_sandbox.instance_id, SOURCE_ROOT)
        assert len(everything) == 3

    async def test_list_files_rejects_traversal(
        self, service: SandboxService, app_sandbox: CreatedSandbox
    ) -> None:
        with pytest.raises(ValueError):
            await service.list_files(app_sandbox.instance_id, "../..")

    async def test_file_tree_is_nested(
        self, service: SandboxService, app_sandbox: CreatedSandbox
    ) -> None:
        tree = await service.file_tree(app_sandbox.instance_id)

        assert tree["name"] == "src"
        assert tree["type"] == "directory"
        top = [(child["name"], child["type"]) for child in tree["children"]]
        assert top == [
            ("components", "directory"),
            ("pages", "directory"),
            ("styles", "directory"),
            ("package.json", "file"),
        ]
        ui = tree["children"][0]["children"][0]
        assert ui["path"] == "components/ui"
        assert ui["children"] == [
            {"name": "Button.tsx", "path": "components/ui/Button.tsx", "type": "file"}
        ]

    async def test_content_tree_skips_unreadable_files(
        self,
        service: SandboxService,
        fake_engine: FakeEngine,
        app_sandbox: CreatedSandbox,
    ) -> None:
        def handler(argv: list[str]) -> CommandResult:
            path = argv[-1]
            if path.endswith("Button.tsx"):
                return CommandResult("", "cat: Permission denied", 1)
            content = fake_engine.read_container_file(app_sandbox.instance_id, path)
            return CommandResult(content or "", "", 0)

        fake_engine.exec_handler = handler

        tree = await service.file_content_tree(app_sandbox.instance_id)

        assert tree == [
            {
                "path": "pages/index.tsx",
                "name": "index.tsx",
                "content": APP_FILES["pages/index.tsx"],
                "type": "file",
            }
        ]

    async def test_content_tree_is_bounded(
        self,
        service: SandboxService,
        app_sandbox: CreatedSandbox,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(settings, "content_tree_max_files", 1)
        tree = await service.file_content_tree(app_sandbox.instance_id)
        assert len(tree) == 1

    async def test_write_then_read(
        self, service: SandboxService, app_sandbox: CreatedSandbox
    ) -> None:
        report = await service.write_files(app_sandbox.sandbox_id, {"x.ts": "export {}"})

        assert report.applied == ["x.ts"]
        assert await service.read_file(app_sandbox.sandbox_id, "x.ts") == "export {}"

    async def test_write_failure_raises_with_report(
        self,
        service: SandboxService,
        fake_engine: FakeEngine,
        app_sandbox: CreatedSandbox,
    ) -> None:
        fake_engine.copy_errors[f"{SOURCE_ROOT}/b.ts"] = EngineCommandError("copy failed")

        with pytest.raises(SyncFailureError) as exc_info:
            await service.write_files(app_sandbox.instance_id, {"a.ts": "a", "b.ts": "b"})

        assert exc_info.value.path == "b.ts"
        assert exc_info.value.report.applied == ["a.ts"]
        assert await service.read_file(app_sandbox.instance_id, "a.ts") == "a"

    async def test_files_of_unknown_sandbox(self, service: SandboxService) -> None:
        with pytest.raises(SandboxNotFoundError):
            await service.read_file("missing", "package.json")

    async def test_exec_read(
        self,
        service: SandboxService,
        fake_engine: FakeEngine,
        app_sandbox: CreatedSandbox,
    ) -> None:
        fake_engine.exec_handler = lambda argv: CommandResult("index.tsx\n", "", 0)
        assert await service.exec_read(app_sandbox.instance_id, "ls pages") == "index.tsx\n"

    async def test_export(self, service: SandboxService, app_sandbox: CreatedSandbox) -> None:
        data = await service.export_archive(app_sandbox.instance_id)

        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            assert sorted(zf.namelist()) == sorted(APP_FILES)


# =========================================================================
# Logs and package manifest
# =========================================================================


class TestLogsAndPackage:
    """get_logs(), get_package() and update_package()."""

    async def test_logs(self, service: SandboxService, app_sandbox: CreatedSandbox) -> None:
        assert "started server" in await service.get_logs(app_sandbox.instance_id)

    async def test_logs_truncated(
        self,
        service: SandboxService,
        fake_engine: FakeEngine,
        app_sandbox: CreatedSandbox,
    ) -> None:
        fake_engine.containers[app_sandbox.instance_id]["logs"] = "x" * 200050
        logs = await service.get_logs(app_sandbox.instance_id)
        assert "50 chars omitted" in logs

    async def test_get_package(self, service: SandboxService, app_sandbox: CreatedSandbox) -> None:
        package = await service.get_package(app_sandbox.instance_id)
        assert package == {"name": "app", "version": "1.0.0"}

    async def test_update_package_pretty_prints(
        self,
        service: SandboxService,
        fake_engine: FakeEngine,
        app_sandbox: CreatedSandbox,
    ) -> None:
        new_package = {"name": "app", "dependencies": {"zod": "^3.22.0"}}

        await service.update_package(app_sandbox.instance_id, new_package)

        assert await service.get_package(app_sandbox.instance_id) == new_package
        raw = fake_engine.read_container_file(
            app_sandbox.instance_id, f"{SOURCE_ROOT}/package.json"
        )
        assert raw == json.dumps(new_package, indent=2)

    async def test_invalid_json(self, service: SandboxService, app_sandbox: CreatedSandbox) -> None:
        await service.write_files(app_sandbox.instance_id, {"package.json": "{not json"})
        with pytest.raises(SandboxError, match="not valid JSON"):
            await service.get_package(app_sandbox.instance_id)

    async def test_not_an_object(
        self, service: SandboxService, app_sandbox: CreatedSandbox
    ) -> None:
        await service.write_files(app_sandbox.instance_id, {"package.json": "[1, 2]"})
        with pytest.raises(SandboxError, match="not a JSON object"):
            await service.get_package(app_sandbox.instance_id)


# =========================================================================
# Health and reaper
# =========================================================================


class TestHousekeeping:
    """health() and start_reaper_loop()."""

    async def test_health_counts_running(
        self, service: SandboxService, fake_engine: FakeEngine
    ) -> None:
        await service.create_sandbox()
        fake_engine.add_container(
            name="dec-nextjs-old", state="exited", labels={"project": PROJECT}
        )

        assert await service.health() == (True, 1)

    async def test_health_engine_down(
        self, service: SandboxService, fake_engine: FakeEngine
    ) -> None:
        fake_engine.available = False
        assert await service.health() == (False, 0)

    async def test_health_listing_fails(
        self, service: SandboxService, fake_engine: FakeEngine
    ) -> None:
        fake_engine.list_error = EngineUnavailableError("daemon busy")
        assert await service.health() == (True, 0)

    async def test_reaper_removes_stale(
        self, service: SandboxService, fake_engine: FakeEngine
    ) -> None:
        created = await service.create_sandbox()
        fake_engine.remove_error = EngineCommandError("device busy")
        with pytest.raises(SandboxError):
            await service.stop_sandbox(created.instance_id)
        assert service.runtime.is_stale(created.instance_id)

        fake_engine.remove_error = None
        task = await service.start_reaper_loop(interval_seconds=0.01)
        try:
            for _ in range(100):
                if not service.runtime.is_stale(created.instance_id):
                    break
                await asyncio.sleep(0.01)
        finally:
            task.cancel()
            await task

        assert not service.runtime.is_stale(created.instance_id)
        assert fake_engine.containers == {}
        assert task.get_name() == "sandbox_reaper"


# =========================================================================
# build_file_tree
# =========================================================================


class TestBuildFileTree:
    """build_file_tree() nesting."""

    def test_empty(self) -> None:
        assert build_file_tree([]) == {
            "name": "src",
            "path": "",
            "type": "directory",
            "children": [],
        }

    def test_orphans_dropped(self) -> None:
        """Entries whose parent directory was truncated away are skipped."""
        tree = build_file_tree(
            [
                FileInfo(name="a.ts", path="a.ts", is_directory=False),
                FileInfo(name="b.ts", path="lib/b.ts", is_directory=False),
            ]
        )
        assert [child["path"] for child in tree["children"]] == ["a.ts"]
