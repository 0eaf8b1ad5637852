"""Tests for event matching (formhook/services/event_matcher.py).

The matched set must be exactly the webhooks that are active, enabled,
owned by the event's user, subscribed to the event kind, and either global
or scoped to the event's agent.
"""

from formhook.services.event_matcher import EventMatcher


class TestMatch:
    """Test suite for EventMatcher.match()."""

    async def test_matches_agent_scoped_and_global(self, db, make_webhook, make_event):
        """Test agent-scoped and global webhooks both match."""
        scoped = make_webhook(agent_id="agent-1")
        global_hook = make_webhook(agent_id=None)
        db.add_all([scoped, global_hook])
        await db.commit()

        matched = await EventMatcher.match(db, make_event(agent_id="agent-1"))

        assert {w.id for w in matched} == {scoped.id, global_hook.id}

    async def test_excludes_other_agents(self, db, make_webhook, make_event):
        other = make_webhook(agent_id="agent-2")
        db.add(other)
        await db.commit()

        assert await EventMatcher.match(db, make_event(agent_id="agent-1")) == []

    async def test_excludes_unsubscribed_kind(self, db, make_webhook, make_event):
        """Test delivery is only considered when the kind is in triggers."""
        db.add(make_webhook(triggers=["session_started", "field_collected"]))
        await db.commit()

        assert await EventMatcher.match(db, make_event(kind="session_completed")) == []

    async def test_excludes_paused_disabled_and_deleted(self, db, make_webhook, make_event):
        db.add_all(
            [
                make_webhook(status="paused"),
                make_webhook(enabled=False),
                make_webhook(status="deleted", enabled=False),
            ]
        )
        await db.commit()

        assert await EventMatcher.match(db, make_event()) == []

    async def test_excludes_other_users(self, db, make_webhook, make_event):
        """Test global webhooks only cover agents of the same owner."""
        db.add(make_webhook(user_id="someone-else", agent_id=None))
        await db.commit()

        assert await EventMatcher.match(db, make_event()) == []

    async def test_event_without_agent_matches_only_globals(self, db, make_webhook, make_event):
        scoped = make_webhook(agent_id="agent-1")
        global_hook = make_webhook(agent_id=None)
        db.add_all([scoped, global_hook])
        await db.commit()

        matched = await EventMatcher.match(db, make_event(agent_id=None))

        assert [w.id for w in matched] == [global_hook.id]

    async def test_exact_set_with_mixed_webhooks(self, db, make_webhook, make_event):
        """Test no extras and no omissions across a mixed population."""
        expected = [
            make_webhook(agent_id="agent-1", triggers=["session_completed"]),
            make_webhook(agent_id=None, triggers=["session_started", "session_completed"]),
        ]
        unexpected = [
            make_webhook(agent_id="agent-1", triggers=["session_updated"]),
            make_webhook(agent_id="agent-1", status="paused"),
            make_webhook(agent_id="agent-9"),
            make_webhook(user_id="someone-else"),
        ]
        db.add_all(expected + unexpected)
        await db.commit()

        matched = await EventMatcher.match(db, make_event(agent_id="agent-1"))

        assert sorted(w.id for w in matched) == sorted(w.id for w in expected)
