"""
Tests for workbench/remediation/executor.py
Plan application against a file collaborator.
"""
import asyncio

import pytest

from workbench.errors import ManualInterventionRequired
from workbench.files import ProjectFiles
from workbench.models import PatchKind, ProjectFile, RemediationPlan
from workbench.persistence.slots import MemorySlotStore
from workbench.persistence.store import PersistenceStore
from workbench.remediation.executor import RemediationExecutor
from workbench.remediation.rules import build_rules


RULES = build_rules(layout_file="app/layout.tsx")
CSS_ERROR = "[postcss] /app/globals.css:1:1: Unknown word\n> 1 | ```css"
FENCED_CSS = "```css\nbody { margin: 0; }\n```\n"


def css_plan() -> RemediationPlan:
    return RemediationPlan(
        target_file="app/globals.css",
        patch_kind=PatchKind.STRIP_CSS_MARKDOWN,
        patch_description="Remove markdown code fences from CSS file",
        explanation="CSS files should not contain markdown syntax",
    )


class SlowFiles(ProjectFiles):
    """Yields during reads and tracks overlapping access per path."""

    def __init__(self, project):
        super().__init__(project)
        self.active: dict[str, int] = {}
        self.max_active = 0

    async def read(self, path):
        self.active[path] = self.active.get(path, 0) + 1
        self.max_active = max(self.max_active, self.active[path])
        await asyncio.sleep(0.01)
        try:
            return await super().read(path)
        finally:
            self.active[path] -= 1


class ReadOnlyFiles(ProjectFiles):
    async def write(self, path, content):
        raise PermissionError("read-only filesystem")


class TestRemediate:
    """Test the classify -> plan -> apply flow."""

    @pytest.mark.asyncio
    async def test_fix_then_idempotent(self):
        files = ProjectFiles({"app/globals.css": FENCED_CSS})
        executor = RemediationExecutor(files, RULES)

        first = await executor.remediate(CSS_ERROR)
        assert first.status == "fixed"
        assert first.reload is True
        assert files.project["app/globals.css"] == "body { margin: 0; }\n"

        second = await executor.remediate(CSS_ERROR)
        assert second.status == "already_applied"
        assert second.reload is False
        assert second.result.ok is True
        assert second.result.changed is False
        assert files.project["app/globals.css"] == "body { margin: 0; }\n"

    @pytest.mark.asyncio
    async def test_unclassified(self):
        executor = RemediationExecutor(ProjectFiles(), RULES)
        outcome = await executor.remediate("all good")
        assert outcome.status == "unclassified"
        assert outcome.diagnosis.category == "unknown"

    @pytest.mark.asyncio
    async def test_unavailable(self):
        executor = RemediationExecutor(ProjectFiles(), RULES)
        outcome = await executor.remediate("SyntaxError: Unexpected token '<'")
        assert outcome.status == "unavailable"
        assert outcome.diagnosis.rule == "syntax_error"

    @pytest.mark.asyncio
    async def test_manual_plan_leaves_files_alone(self):
        files = ProjectFiles({"package.json": "{}"})
        executor = RemediationExecutor(files, RULES)
        outcome = await executor.remediate("Module not found: Can't resolve 'zod'")
        assert outcome.status == "manual"
        assert outcome.result is None
        assert files.project == {"package.json": "{}"}

    @pytest.mark.asyncio
    async def test_missing_target(self):
        executor = RemediationExecutor(ProjectFiles(), RULES)
        outcome = await executor.remediate(CSS_ERROR)
        assert outcome.status == "failed"
        assert outcome.result.error == "File not found: app/globals.css"
        assert outcome.reload is False


class TestApply:
    """Test direct plan application."""

    @pytest.mark.asyncio
    async def test_manual_plan_raises(self):
        executor = RemediationExecutor(ProjectFiles(), RULES)
        plan = RemediationPlan(
            target_file="package.json",
            patch_description="npm install zod",
            explanation="Missing dependency: zod",
            manual=True,
        )
        with pytest.raises(ManualInterventionRequired):
            await executor.apply(plan)

    @pytest.mark.asyncio
    async def test_anchor_not_found(self):
        content = "export default function Layout() { return null }\n"
        files = ProjectFiles({"app/layout.tsx": content})
        executor = RemediationExecutor(files, RULES)
        plan = RemediationPlan(
            target_file="app/layout.tsx",
            patch_kind=PatchKind.SUPPRESS_HYDRATION_WARNING,
            patch_description="Add suppressHydrationWarning",
            explanation="hydration mismatch",
        )
        result = await executor.apply(plan)
        assert result.ok is False
        assert result.changed is False
        assert files.project["app/layout.tsx"] == content

    @pytest.mark.asyncio
    async def test_write_failure_reported(self):
        files = ReadOnlyFiles({"app/globals.css": FENCED_CSS})
        executor = RemediationExecutor(files, RULES)
        result = await executor.apply(css_plan())
        assert result.ok is False
        assert result.error.startswith("Write failed")

    @pytest.mark.asyncio
    async def test_target_path_normalized(self):
        files = ProjectFiles({"app/globals.css": FENCED_CSS})
        executor = RemediationExecutor(files, RULES)
        plan = css_plan().model_copy(update={"target_file": "./app/globals.css"})
        result = await executor.apply(plan)
        assert result.target_file == "app/globals.css"
        assert result.changed is True

    @pytest.mark.asyncio
    async def test_concurrent_applies_to_same_file_serialize(self):
        files = SlowFiles({"app/globals.css": FENCED_CSS})
        executor = RemediationExecutor(files, RULES)

        results = await asyncio.gather(*(executor.apply(css_plan()) for _ in range(5)))

        assert files.max_active == 1
        assert sum(1 for r in results if r.changed) == 1
        assert all(r.ok for r in results)
        assert files.project["app/globals.css"] == "body { margin: 0; }\n"


class TestPropose:
    def test_plan_for_matching_error(self):
        executor = RemediationExecutor(ProjectFiles(), RULES)
        plan = executor.propose(CSS_ERROR)
        assert plan.target_file == "app/globals.css"
        assert plan.patch_kind is PatchKind.STRIP_CSS_MARKDOWN

    def test_none_without_match_or_plan(self):
        executor = RemediationExecutor(ProjectFiles(), RULES)
        assert executor.propose("all good") is None
        assert executor.propose("SyntaxError: Unexpected token '<'") is None

    def test_diagnose_carries_rule(self):
        executor = RemediationExecutor(ProjectFiles(), RULES)
        diagnosis = executor.diagnose(CSS_ERROR)
        assert diagnosis.category == "css"
        assert diagnosis.rule == "css_markdown"
        assert diagnosis.description == "CSS file contains markdown syntax"


class UnwritableSlots(MemorySlotStore):
    async def write(self, key, value):
        raise OSError("storage offline")


class TestSavePatchedFiles:
    """Test that fixed files reach the saved snapshot."""

    @pytest.mark.asyncio
    async def test_patched_file_merged_into_snapshot(self, store):
        await store.save_files([ProjectFile(path="src/App.jsx", content="x")])
        files = ProjectFiles({"app/globals.css": FENCED_CSS})
        executor = RemediationExecutor(files, RULES, store)

        result = await executor.apply(css_plan())
        assert result.changed is True
        assert result.persisted is True

        saved = (await store.load()).file_map()
        assert saved["app/globals.css"].content == "body { margin: 0; }\n"
        assert saved["app/globals.css"].type == "css"
        assert saved["src/App.jsx"].content == "x"

    @pytest.mark.asyncio
    async def test_no_save_when_already_applied(self, store):
        files = ProjectFiles({"app/globals.css": "body {}\n"})
        executor = RemediationExecutor(files, RULES, store)
        result = await executor.apply(css_plan())
        assert result.changed is False
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_save_failure_keeps_fix(self):
        files = ProjectFiles({"app/globals.css": FENCED_CSS})
        executor = RemediationExecutor(files, RULES, PersistenceStore(UnwritableSlots()))
        result = await executor.apply(css_plan())
        assert result.ok is True
        assert result.changed is True
        assert result.persisted is False
        assert files.project["app/globals.css"] == "body { margin: 0; }\n"
