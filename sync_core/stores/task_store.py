# =============================================================================
# sync_core/stores/task_store.py
# Task templates, assignment, submission and review
# =============================================================================

from __future__ import annotations
import copy
import time
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional

from sync_core.errors import AuthorizationError, NotFoundError, ValidationError
from sync_core.gateway import ProgressCallback, UploadHandle
from sync_core.models import (
    AssignableTask,
    EntityKind,
    Filter,
    Identity,
    Role,
    TaskKind,
    TaskStatus,
    TaskTemplate,
    check_task_transition,
    effective_status,
    is_overdue,
    new_temp_id,
    parse_timestamp,
    utcnow,
)
from sync_core.sync import ScreenScope
from sync_core.validation import validate_upload
from .base_store import BaseStore

TEMPLATE_EDITABLE = ("title", "kind", "description", "content")


class TaskStore(BaseStore):
    """
    Homework tasks: the operator assigns from templates, the client submits,
    the operator reviews.

    Overdue is never stored by this store; it is derived from the due date
    (see models.rules.effective_status).
    """

    def _check_owner(self, identity: Identity, task: AssignableTask) -> None:
        if task.owner_id != identity.id:
            raise AuthorizationError(
                "You can only submit your own tasks",
                kind=EntityKind.TASK.value,
                role=identity.role.value,
            )

    # =========================================================================
    # READS
    # =========================================================================

    async def fetch_tasks(self, owner_id: Optional[str] = None, force: bool = False) -> List[AssignableTask]:
        filter = Filter.where(owner_id=owner_id) if owner_id else None
        return await self._load(EntityKind.TASK, filter, force=force)

    async def fetch_templates(self, force: bool = False) -> List[TaskTemplate]:
        return await self._load(EntityKind.TASK_TEMPLATE, force=force)

    def overdue_tasks(self, now: Optional[datetime] = None) -> List[AssignableTask]:
        """Cached open tasks whose due date has passed."""
        now = now or utcnow()
        return [t for t in self.cache.list(EntityKind.TASK) if is_overdue(t, now)]

    def status_counts(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Count cached tasks by effective status.

        Returns:
            Dict of status value -> count, with every status present
        """
        now = now or utcnow()
        counts = Counter(effective_status(t, now) for t in self.cache.list(EntityKind.TASK))
        return {status.value: counts.get(status, 0) for status in TaskStatus}

    async def watch(self) -> None:
        await self._watch(EntityKind.TASK)

    # =========================================================================
    # ASSIGNMENT
    # =========================================================================

    async def _get_template(self, template_id: str) -> TaskTemplate:
        template = self.cache.get(EntityKind.TASK_TEMPLATE, template_id)
        if template is None:
            await self.fetch_templates()
            template = self.cache.get(EntityKind.TASK_TEMPLATE, template_id)
        if template is None:
            raise NotFoundError(
                f"Task template {template_id} not found",
                kind=EntityKind.TASK_TEMPLATE.value,
                entity_id=template_id,
            )
        return template

    async def assign_task(
        self,
        owner_id: str,
        due_date: Any,
        template_id: Optional[str] = None,
        title: Optional[str] = None,
        kind: Optional[TaskKind] = None,
        description: Optional[str] = None,
        content: Optional[Dict[str, Any]] = None,
        scope: Optional[ScreenScope] = None,
    ) -> AssignableTask:
        """
        Assign a task to a client.

        With a template, its title, kind, description and content are copied
        onto the task; explicit arguments override the copy.

        Args:
            owner_id: Client receiving the task
            due_date: Due date (datetime or ISO string)
            template_id: Optional template to copy from
        """
        self.session.require_role(Role.OPERATOR)

        template = await self._get_template(template_id) if template_id else None
        if template is not None:
            title = title or template.title
            kind = kind or template.kind
            description = template.description if description is None else description
            content = copy.deepcopy(template.content) if content is None else content

        if not (title or "").strip():
            raise ValidationError("Title is required", field="title")
        if kind is None:
            raise ValidationError("Task type is required", field="kind")

        due = parse_timestamp(due_date)
        assigned_at = utcnow()
        optimistic = AssignableTask(
            id=new_temp_id(),
            owner_id=owner_id,
            title=title.strip(),
            kind=TaskKind(kind),
            due_date=due,
            description=description or "",
            status=TaskStatus.PENDING,
            template_id=template_id,
            content=content,
            assigned_at=assigned_at,
            template=template,
        )
        with self.log_operation(f"Assigning task to {owner_id}"):
            return await self.coordinator.create(EntityKind.TASK, optimistic, scope=scope)

    # =========================================================================
    # SUBMISSION AND REVIEW
    # =========================================================================

    def upload_submission(
        self,
        task_id: str,
        file_data: bytes,
        file_name: str,
        content_type: str = "application/octet-stream",
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadHandle:
        """
        Start uploading a submission file. The handle can be cancelled, and
        is passed to submit_task(upload=...) once the client confirms.
        """
        identity = self.session.require_identity()
        validate_upload(file_name, content_type)
        path = f"{identity.id}/{task_id}_{int(time.time() * 1000)}_{file_name}"
        gateway = self.coordinator.gateway
        return gateway.upload(
            file_data,
            path,
            bucket=gateway.settings.task_bucket,
            on_progress=on_progress,
            content_type=content_type,
        )

    async def submit_task(
        self,
        task_id: str,
        content: Any = None,
        file_data: Optional[bytes] = None,
        file_name: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        upload: Optional[UploadHandle] = None,
        scope: Optional[ScreenScope] = None,
    ) -> AssignableTask:
        """
        Submit a task. A file is uploaded first; if the upload fails or is
        cancelled the task is left untouched.
        """
        identity = self.session.require_identity()
        task = self.cache.get(EntityKind.TASK, task_id)
        if task is not None:
            self._check_owner(identity, task)

        if upload is None and file_data is not None:
            upload = self.upload_submission(task_id, file_data, file_name, on_progress=on_progress)
        file_path = None
        if upload is not None:
            stored = await upload.result()
            file_path = stored.path

        if content is None and file_path is None:
            raise ValidationError("Nothing to submit", field="submission_content")

        def compute(current: AssignableTask) -> Optional[Dict[str, Any]]:
            self._check_owner(identity, current)
            if not check_task_transition(current.status, TaskStatus.SUBMITTED):
                return None
            return {
                "status": TaskStatus.SUBMITTED,
                "submission_content": content,
                "submission_file_path": file_path,
            }

        return await self.coordinator.update(EntityKind.TASK, task_id, compute, scope)

    async def review_task(self, task_id: str, scope: Optional[ScreenScope] = None) -> AssignableTask:
        self.session.require_role(Role.OPERATOR)

        def compute(current: AssignableTask) -> Optional[Dict[str, Any]]:
            if not check_task_transition(current.status, TaskStatus.REVIEWED):
                return None
            return {"status": TaskStatus.REVIEWED}

        return await self.coordinator.update(EntityKind.TASK, task_id, compute, scope)

    # =========================================================================
    # TEMPLATES
    # =========================================================================

    async def create_template(
        self,
        title: str,
        kind: TaskKind,
        description: str = "",
        content: Optional[Dict[str, Any]] = None,
        scope: Optional[ScreenScope] = None,
    ) -> TaskTemplate:
        self.session.require_role(Role.OPERATOR)
        if not (title or "").strip():
            raise ValidationError("Title is required", field="title")
        optimistic = TaskTemplate(
            id=new_temp_id(),
            title=title.strip(),
            kind=TaskKind(kind),
            description=description or "",
            content=content or {},
            created_at=utcnow(),
        )
        return await self.coordinator.create(EntityKind.TASK_TEMPLATE, optimistic, scope=scope)

    async def update_template(
        self,
        template_id: str,
        scope: Optional[ScreenScope] = None,
        **changes: Any,
    ) -> TaskTemplate:
        """Edit a template. Tasks already assigned from it keep their copy."""
        self.session.require_role(Role.OPERATOR)
        forbidden = sorted(set(changes) - set(TEMPLATE_EDITABLE))
        if forbidden:
            raise ValidationError(f"Template fields cannot be edited: {forbidden}", field=forbidden[0])
        if "title" in changes and not (changes["title"] or "").strip():
            raise ValidationError("Title is required", field="title")

        def compute(current: TaskTemplate) -> Optional[Dict[str, Any]]:
            patch = {k: v for k, v in changes.items() if getattr(current, k) != v}
            return patch or None

        return await self.coordinator.update(EntityKind.TASK_TEMPLATE, template_id, compute, scope)

    async def delete_template(self, template_id: str, scope: Optional[ScreenScope] = None) -> None:
        self.session.require_role(Role.OPERATOR)
        await self.coordinator.remove(EntityKind.TASK_TEMPLATE, template_id, scope)
