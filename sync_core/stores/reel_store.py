# =============================================================================
# sync_core/stores/reel_store.py
# Code-snippet feed: reels, likes and comments
# =============================================================================

from __future__ import annotations
import time
import uuid
from typing import List, Optional

from sync_core.errors import AuthorizationError, ConflictError, NotFoundError
from sync_core.gateway import ProgressCallback
from sync_core.models import (
    Comment,
    EntityKind,
    Filter,
    Like,
    Reel,
    ResultType,
    new_temp_id,
    utcnow,
)
from sync_core.sync import ScreenScope
from sync_core.validation import validate_reel_form, validate_upload
from .base_store import BaseStore


class ReelStore(BaseStore):
    """
    Feed of posted code snippets.

    Usage:
        reels = await store.fetch_feed()
        await store.like(reels[0].id)
        await store.add_comment(reels[0].id, "Nice trick")
    """

    # =========================================================================
    # REELS
    # =========================================================================

    async def fetch_feed(self, force: bool = False) -> List[Reel]:
        """Newest first."""
        return await self._load(EntityKind.REEL, force=force)

    async def fetch_reel(self, reel_id: str) -> Reel:
        reel = self.cache.get(EntityKind.REEL, reel_id)
        if reel is not None:
            return reel
        found = await self._load(EntityKind.REEL, Filter.where(id=reel_id))
        if not found:
            raise NotFoundError(f"Reel {reel_id} not found", kind=EntityKind.REEL.value, entity_id=reel_id)
        return found[0]

    async def create_reel(
        self,
        title: str,
        code_snippet: str,
        code_language: str,
        result_type: ResultType,
        result_content: str = "",
        image_data: Optional[bytes] = None,
        image_name: Optional[str] = None,
        image_content_type: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        scope: Optional[ScreenScope] = None,
    ) -> Reel:
        """
        Post a reel. For image results an uploaded image takes precedence
        over a pasted URL; its public URL becomes the result content.
        """
        identity = self.session.require_identity()
        result_type = ResultType(result_type)
        has_image = image_data is not None
        validate_reel_form(title, code_snippet, code_language, result_type, result_content, has_image)

        if has_image and result_type is ResultType.IMAGE:
            validate_upload(image_name, image_content_type, allowed_prefix="image/")
            extension = image_name.rsplit(".", 1)[-1] if "." in image_name else "bin"
            path = f"{identity.id}/{uuid.uuid4().hex[:12]}_{int(time.time() * 1000)}.{extension}"
            gateway = self.coordinator.gateway
            handle = gateway.upload(
                image_data,
                path,
                bucket=gateway.settings.reel_bucket,
                on_progress=on_progress,
                content_type=image_content_type,
            )
            stored = await handle.result()
            result_content = stored.public_url

        optimistic = Reel(
            id=new_temp_id(),
            author_id=identity.id,
            title=title.strip(),
            code_snippet=code_snippet,
            code_language=code_language.strip(),
            result_type=result_type,
            result_content=(result_content or "").strip(),
            created_at=utcnow(),
        )
        payload = optimistic.to_payload(exclude=("id", "created_at"))
        with self.log_operation(f"Posting reel '{optimistic.title}'"):
            return await self.coordinator.create(EntityKind.REEL, optimistic, payload, scope)

    # =========================================================================
    # LIKES
    # =========================================================================

    async def fetch_likes(self, reel_id: str, force: bool = False) -> List[Like]:
        return await self._load(EntityKind.LIKE, Filter.where(reel_id=reel_id), force=force)

    def _own_like(self, reel_id: str) -> Optional[Like]:
        me = self.session.require_identity().id
        found = self.cache.list(EntityKind.LIKE, Filter.where(reel_id=reel_id, user_id=me))
        return found[0] if found else None

    def like_count(self, reel_id: str) -> int:
        return len(self.cache.list(EntityKind.LIKE, Filter.where(reel_id=reel_id)))

    def has_liked(self, reel_id: str) -> bool:
        return self._own_like(reel_id) is not None

    async def like(self, reel_id: str, scope: Optional[ScreenScope] = None) -> Like:
        """Like a reel. Liking twice returns the existing like."""
        existing = self._own_like(reel_id)
        if existing is not None:
            return existing

        me = self.session.require_identity().id
        optimistic = Like(id=new_temp_id(), reel_id=reel_id, user_id=me, created_at=utcnow())
        try:
            return await self.coordinator.create(
                EntityKind.LIKE, optimistic, {"reel_id": reel_id, "user_id": me}, scope
            )
        except ConflictError:
            await self.fetch_likes(reel_id, force=True)
            existing = self._own_like(reel_id)
            if existing is None:
                raise
            return existing

    async def unlike(self, reel_id: str, scope: Optional[ScreenScope] = None) -> None:
        existing = self._own_like(reel_id)
        if existing is None:
            await self.fetch_likes(reel_id)
            existing = self._own_like(reel_id)
        if existing is None:
            return
        await self.coordinator.remove(EntityKind.LIKE, existing.id, scope)

    # =========================================================================
    # COMMENTS
    # =========================================================================

    async def fetch_comments(self, reel_id: str, force: bool = False) -> List[Comment]:
        """Oldest first."""
        return await self._load(EntityKind.COMMENT, Filter.where(reel_id=reel_id), force=force)

    async def add_comment(self, reel_id: str, content: str, scope: Optional[ScreenScope] = None) -> Comment:
        me = self.session.require_identity().id
        optimistic = Comment(
            id=new_temp_id(),
            reel_id=reel_id,
            author_id=me,
            content=(content or "").strip(),
            created_at=utcnow(),
        )
        payload = optimistic.to_payload(exclude=("id", "created_at"))
        return await self.coordinator.create(EntityKind.COMMENT, optimistic, payload, scope)

    async def delete_comment(self, comment_id: str, scope: Optional[ScreenScope] = None) -> None:
        identity = self.session.require_identity()
        comment = self.cache.get(EntityKind.COMMENT, comment_id)
        if comment is None:
            raise NotFoundError(
                f"Comment {comment_id} not found",
                kind=EntityKind.COMMENT.value,
                entity_id=comment_id,
            )
        if comment.author_id != identity.id:
            raise AuthorizationError(
                "You can only delete your own comments",
                kind=EntityKind.COMMENT.value,
                role=identity.role.value,
            )
        await self.coordinator.remove(EntityKind.COMMENT, comment_id, scope)

    async def watch_comments(self, reel_id: str) -> None:
        await self._watch(EntityKind.COMMENT, Filter.where(reel_id=reel_id))
