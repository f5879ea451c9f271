# =============================================================================
# tests/unit/test_reel_store.py
# Unit Tests for ReelStore
# =============================================================================

import pytest

from sync_core.errors import AuthorizationError, NotFoundError, ValidationError
from sync_core.models import EntityKind, ResultType


async def _post(app_context, **overrides):
    fields = {
        "title": "Flatten a list",
        "code_snippet": "sum(nested, [])",
        "code_language": "python",
        "result_type": ResultType.TEXT,
        "result_content": "[1, 2, 3]",
    }
    fields.update(overrides)
    return await app_context.reels.create_reel(**fields)


class TestReels:
    """Test posting and reading reels"""

    @pytest.mark.asyncio
    async def test_post_text_reel(self, app_context, users):
        await app_context.session.sign_in(users.client_email, users.password)

        reel = await _post(app_context, title="  Flatten a list  ")

        assert reel.title == "Flatten a list"
        assert reel.author_id == users.client_id
        assert [r.id for r in await app_context.reels.fetch_feed()] == [reel.id]

    @pytest.mark.asyncio
    async def test_uploaded_image_becomes_result(self, app_context, seeded_gateway, users):
        await app_context.session.sign_in(users.client_email, users.password)

        reel = await _post(
            app_context,
            result_type=ResultType.IMAGE,
            result_content="",
            image_data=b"\x89PNG....",
            image_name="plot.png",
            image_content_type="image/png",
        )

        assert reel.result_content.startswith(f"memory://reel-images/{users.client_id}/")
        assert reel.result_content.endswith(".png")
        assert len([key for key in seeded_gateway.objects if key[0] == "reel-images"]) == 1

    @pytest.mark.asyncio
    async def test_image_reel_needs_image_or_url(self, app_context, users):
        await app_context.session.sign_in(users.client_email, users.password)

        with pytest.raises(ValidationError, match="upload an image or provide an image URL"):
            await _post(app_context, result_type=ResultType.IMAGE, result_content="")

    @pytest.mark.asyncio
    async def test_non_image_upload_is_rejected(self, app_context, seeded_gateway, users):
        await app_context.session.sign_in(users.client_email, users.password)

        with pytest.raises(ValidationError, match="File must be an image"):
            await _post(
                app_context,
                result_type=ResultType.IMAGE,
                image_data=b"%PDF",
                image_name="doc.pdf",
                image_content_type="application/pdf",
            )
        assert seeded_gateway.objects == {}

    @pytest.mark.asyncio
    async def test_missing_reel(self, app_context, users):
        await app_context.session.sign_in(users.client_email, users.password)

        with pytest.raises(NotFoundError):
            await app_context.reels.fetch_reel("reel-missing")


class TestLikes:
    """Test likes, including duplicates from another device"""

    @pytest.mark.asyncio
    async def test_like_twice_keeps_one(self, app_context, seeded_gateway, users):
        await app_context.session.sign_in(users.client_email, users.password)
        reel = await _post(app_context)
        reels = app_context.reels

        first = await reels.like(reel.id)
        second = await reels.like(reel.id)

        assert first.id == second.id
        assert reels.like_count(reel.id) == 1
        assert reels.has_liked(reel.id)
        assert seeded_gateway.call_count("create", EntityKind.LIKE) == 1

    @pytest.mark.asyncio
    async def test_like_made_elsewhere_is_reused(self, app_context, seeded_gateway, users):
        await app_context.session.sign_in(users.client_email, users.password)
        reel = await _post(app_context)
        await app_context.reels.fetch_likes(reel.id)
        seeded_gateway.seed(EntityKind.LIKE, [{"id": "like-9", "reel_id": reel.id, "user_id": users.client_id}])

        like = await app_context.reels.like(reel.id)

        assert like.id == "like-9"

    @pytest.mark.asyncio
    async def test_unlike(self, app_context, seeded_gateway, users):
        await app_context.session.sign_in(users.client_email, users.password)
        reel = await _post(app_context)
        await app_context.reels.like(reel.id)

        await app_context.reels.unlike(reel.id)
        await app_context.reels.unlike(reel.id)

        assert app_context.reels.like_count(reel.id) == 0
        assert seeded_gateway.rows(EntityKind.LIKE) == []
        assert seeded_gateway.call_count("remove", EntityKind.LIKE) == 1


class TestComments:
    """Test comments"""

    @pytest.mark.asyncio
    async def test_add_and_delete_own_comment(self, app_context, seeded_gateway, users):
        await app_context.session.sign_in(users.client_email, users.password)
        reel = await _post(app_context)

        comment = await app_context.reels.add_comment(reel.id, " Neat ")
        assert [c.content for c in await app_context.reels.fetch_comments(reel.id)] == ["Neat"]

        await app_context.reels.delete_comment(comment.id)
        assert seeded_gateway.row(EntityKind.COMMENT, comment.id) is None

    @pytest.mark.asyncio
    async def test_empty_comment(self, app_context, users):
        await app_context.session.sign_in(users.client_email, users.password)

        with pytest.raises(ValidationError, match="Comment cannot be empty"):
            await app_context.reels.add_comment("reel-1", "   ")

    @pytest.mark.asyncio
    async def test_cannot_delete_someone_elses_comment(self, app_context, seeded_gateway, users):
        seeded_gateway.seed(EntityKind.COMMENT, [
            {"id": "comment-1", "reel_id": "reel-1", "user_id": users.other_id, "content": "Mine"},
        ])
        await app_context.session.sign_in(users.client_email, users.password)
        await app_context.reels.fetch_comments("reel-1")

        with pytest.raises(AuthorizationError):
            await app_context.reels.delete_comment("comment-1")

    @pytest.mark.asyncio
    async def test_unknown_comment(self, app_context, users):
        await app_context.session.sign_in(users.client_email, users.password)

        with pytest.raises(NotFoundError):
            await app_context.reels.delete_comment("comment-missing")
