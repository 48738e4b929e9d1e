import asyncio
import logging
from collections import defaultdict

from pydantic import BaseModel

from workbench.errors import (
    ManualInterventionRequired,
    PatchApplyFailure,
    PersistenceReadFailure,
    PersistenceWriteFailure,
)
from workbench.files import FileCollaborator, file_type_for, normalize_path
from workbench.models import Diagnosis, PatchResult, ProjectFile, RemediationPlan, UNKNOWN_CATEGORY
from workbench.persistence.store import PersistenceStore
from workbench.remediation.patches import get_patch
from workbench.remediation.rules import RULES, ErrorRule, classify


logger = logging.getLogger("workbench.remediation")


class RemediationOutcome(BaseModel):
    """What happened to one error event.

    status is one of: fixed, already_applied, manual, unavailable,
    unclassified, failed.
    """

    status: str
    diagnosis: Diagnosis
    result: PatchResult | None = None

    @property
    def reload(self) -> bool:
        return self.status == "fixed"


class RemediationExecutor:
    """Turns classified errors into plans and applies the unattended ones.

    Patch application is serialized per target file so two plans aimed at the
    same file during an error storm never interleave their read and write.
    A failed apply is reported, never retried. With a store, every patched
    file is also merged into the saved snapshot so recovery restores it.
    """

    def __init__(
        self,
        files: FileCollaborator,
        rules: tuple[ErrorRule, ...] = RULES,
        store: PersistenceStore | None = None,
    ):
        self.files = files
        self.rules = rules
        self.store = store
        self._file_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def propose(self, error_text: str) -> RemediationPlan | None:
        rule = classify(error_text, self.rules)
        if rule is None or rule.producer is None:
            return None
        plan = rule.producer(error_text)
        if plan is None:
            logger.info("propose: rule %s matched but no plan could be derived", rule.name)
        return plan

    def diagnose(self, error_text: str) -> Diagnosis:
        rule = classify(error_text, self.rules)
        if rule is None:
            return Diagnosis(category=UNKNOWN_CATEGORY)
        plan = rule.producer(error_text) if rule.producer else None
        return Diagnosis(
            category=rule.category.value,
            rule=rule.name,
            description=rule.description,
            plan=plan,
        )

    async def _read(self, target: str) -> str:
        try:
            return await self.files.read(target)
        except FileNotFoundError as e:
            raise PatchApplyFailure(target, f"File not found: {target}") from e
        except Exception as e:
            raise PatchApplyFailure(target, f"Read failed: {e}") from e

    async def _write(self, target: str, content: str) -> None:
        try:
            await self.files.write(target, content)
        except Exception as e:
            raise PatchApplyFailure(target, f"Write failed: {e}") from e

    async def apply(self, plan: RemediationPlan) -> PatchResult:
        if plan.manual or plan.patch_kind is None:
            raise ManualInterventionRequired(plan.target_file, plan.explanation)

        target = normalize_path(plan.target_file)
        patch = get_patch(plan.patch_kind)
        async with self._file_locks[target]:
            try:
                content = await self._read(target)
                if patch.is_applied(content):
                    return PatchResult(
                        ok=True,
                        target_file=target,
                        changed=False,
                        message="Patch already present",
                    )
                updated = patch.transform(content)
                if updated == content:
                    return PatchResult(
                        ok=False,
                        target_file=target,
                        error="Patch anchor not found; file left unchanged",
                    )
                await self._write(target, updated)
            except PatchApplyFailure as failure:
                logger.error("apply[%s] %s", patch.kind.value, str(failure))
                return PatchResult(ok=False, target_file=target, error=failure.reason)
            persisted = await self._persist(target, updated)

        logger.info("apply[%s] patched %s", patch.kind.value, target)
        return PatchResult(
            ok=True,
            target_file=target,
            changed=True,
            persisted=persisted,
            message=plan.patch_description,
        )

    async def _persist(self, target: str, content: str) -> bool:
        if self.store is None:
            return False
        try:
            await self.store.save_files(
                [ProjectFile(path=target, content=content, type=file_type_for(target))]
            )
        except (PersistenceReadFailure, PersistenceWriteFailure) as e:
            logger.error("apply: patched %s but could not save it: %s", target, str(e))
            return False
        return True

    async def remediate(self, error_text: str) -> RemediationOutcome:
        diagnosis = self.diagnose(error_text)
        if diagnosis.rule is None:
            return RemediationOutcome(status="unclassified", diagnosis=diagnosis)
        plan = diagnosis.plan
        if plan is None:
            return RemediationOutcome(status="unavailable", diagnosis=diagnosis)
        if plan.manual:
            return RemediationOutcome(status="manual", diagnosis=diagnosis)
        result = await self.apply(plan)
        if not result.ok:
            status = "failed"
        elif result.changed:
            status = "fixed"
        else:
            status = "already_applied"
        return RemediationOutcome(status=status, diagnosis=diagnosis, result=result)
