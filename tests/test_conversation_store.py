from itertools import permutations

from src.assistant_sync.domain.chat_models import EntityRef, utc_now
from src.assistant_sync.services.conversation_store import ConversationState, DedupWindows, merge
from .utils import at, msg


BASE = utc_now()


def _shape(messages):
    return [(m.role, m.content, m.created_at) for m in messages]


def test_merge_keeps_pending_message_without_canonical_match():
    m1 = msg("user", "Hi", at(0, BASE), message_id="m1")
    m2 = msg("assistant", "Hello!", at(5, BASE), message_id="m2")
    local_m1 = msg("user", "Hi", at(0, BASE), message_id="m1")
    m3 = msg("user", "Summarize sprint 4", at(30, BASE), pending=True)

    merged = merge([m1, m2], [local_m1, m3])

    assert [m.content for m in merged] == ["Hi", "Hello!", "Summarize sprint 4"]
    assert merged[-1].pending is True
    assert merged[-1].client_id == m3.client_id


def test_merge_replaces_pending_message_with_canonical_echo():
    m1 = msg("user", "Hi", at(0, BASE), message_id="m1")
    m2 = msg("user", "Summarize sprint 4", at(9.5, BASE), message_id="m2")
    m3 = msg("user", "Summarize sprint 4", at(9, BASE), pending=True)

    merged = merge([m1, m2], [m1, m3])

    assert len(merged) == 2
    echo = merged[-1]
    assert echo.message_id == "m2"
    assert echo.pending is False
    # the local identity survives so the presenter and dispatcher keep tracking it
    assert echo.client_id == m3.client_id


def test_merge_carries_locally_stamped_fields_onto_echo():
    server = msg("assistant", "Project ready", at(1, BASE), message_id="a1")
    local = msg(
        "assistant",
        "Project ready",
        at(2, BASE),
        created_entity_id="proj-9",
        created_entity_kind="project",
    )

    merged = merge([server], [local])

    assert len(merged) == 1
    assert merged[0].message_id == "a1"
    assert merged[0].created_entity_id == "proj-9"
    assert merged[0].created_entity_kind == "project"


def test_merge_does_not_mutate_canonical_inputs():
    server = msg("assistant", "Done", at(0, BASE), message_id="a1")
    local = msg("assistant", "Done", at(0.5, BASE), created_entity_id="t-1", created_entity_kind="task")

    merge([server], [local])

    assert server.created_entity_id is None


def test_merge_collapses_duplicate_canonical_echoes():
    first = msg("user", "Plan sprint", at(0, BASE), message_id="u1")
    echo = msg("user", "Plan sprint", at(3, BASE), message_id="u2")
    later = msg("user", "Plan sprint", at(60, BASE), message_id="u3")

    merged = merge([first, echo, later], [])

    assert [m.message_id for m in merged] == ["u1", "u3"]


def test_assistant_window_is_narrower_than_user_window():
    a = msg("assistant", "OK", at(0, BASE), message_id="a1")
    b = msg("assistant", "OK", at(3, BASE), message_id="a2")

    assert len(merge([a, b], [])) == 2
    assert len(merge([a, b], [], DedupWindows(assistant_seconds=5))) == 1


def test_merge_is_independent_of_input_order():
    canonical = [
        msg("user", "one", at(0, BASE), message_id="c1"),
        msg("assistant", "two", at(1, BASE), message_id="c2"),
        msg("user", "three", at(20, BASE), message_id="c3"),
    ]
    local = [
        msg("user", "three", at(19.5, BASE), pending=True),
        msg("user", "four", at(40, BASE), pending=True),
    ]

    expected = _shape(merge(canonical, local))
    for c_order in permutations(canonical):
        for l_order in permutations(local):
            assert _shape(merge(list(c_order), list(l_order))) == expected

    times = [created_at for _, _, created_at in expected]
    assert times == sorted(times)


def test_merge_with_colliding_echoes_ignores_input_order():
    # chained echoes: b is within the window of both a and c
    echoes = [
        msg("user", "ok", at(0, BASE), message_id="a"),
        msg("user", "ok", at(8, BASE), message_id="b"),
        msg("user", "ok", at(16, BASE), message_id="c"),
    ]
    for order in permutations(echoes):
        assert [m.message_id for m in merge(list(order), [])] == ["a", "c"]

    canonical = [
        msg("user", "ok", at(0, BASE), message_id="c1"),
        msg("user", "ok", at(11, BASE), message_id="c2"),
    ]
    local = [
        msg("user", "ok", at(6, BASE), pending=True),
        msg("user", "ok", at(10.5, BASE), pending=True),
    ]
    expected = _shape(merge(canonical, local))
    assert len(expected) == 2
    for c_order in permutations(canonical):
        for l_order in permutations(local):
            merged = merge(list(c_order), list(l_order))
            assert _shape(merged) == expected
            assert not any(m.pending for m in merged)


def test_merge_size_is_bounded_by_inputs():
    canonical = [msg("user", "x", at(i * 30, BASE), message_id=f"c{i}") for i in range(4)]
    local = [msg("user", "x", at(i * 30 + 1, BASE), pending=True) for i in range(3)]
    local.append(msg("user", "y", at(500, BASE), pending=True))

    merged = merge(canonical, local)

    assert len(merged) <= len(canonical) + len(local)
    assert len(merged) == 5


def test_state_ignores_identical_optimistic_send_within_a_second():
    state = ConversationState("conv-1")
    now = utc_now()

    first = state.append_optimistic("Create a project", now=now)
    again = state.append_optimistic("Create a project", now=at(0.4, now))
    later = state.append_optimistic("Create a project", now=at(1.5, now))

    assert first is not None and first.pending
    assert again is None
    assert later is not None
    assert len(state) == 2


def test_state_remove_optimistic_only_touches_pending_messages():
    state = ConversationState("conv-1")
    pending = state.append_optimistic("Hello")
    reply = state.add_reply("Hi there")

    assert state.remove_optimistic(reply.client_id) is False
    assert state.remove_optimistic(pending.client_id) is True
    assert [m.content for m in state.messages] == ["Hi there"]


def test_state_add_reply_reuses_recent_identical_reply():
    state = ConversationState("conv-1")
    now = utc_now()

    first = state.add_reply("Sure.", now=now)
    second = state.add_reply("Sure.", now=at(0.5, now))

    assert second is first
    assert len(state) == 1


def test_state_snapshot_reconciles_and_stamp_survives():
    state = ConversationState("conv-1")
    now = utc_now()
    state.append_optimistic("Make Atlas", now=now)
    reply = state.add_reply('{"action": "create_project", "project_name": "Atlas"}', now=at(1, now))
    state.stamp(reply, EntityRef(entity_id="proj-1", kind="project"))

    canonical = [
        msg("user", "Make Atlas", at(0.2, now), message_id="u1"),
        msg("assistant", reply.content, at(1.3, now), message_id="a1"),
    ]
    merged = state.apply_snapshot(canonical)

    assert [m.message_id for m in merged] == ["u1", "a1"]
    assert not any(m.pending for m in merged)
    assert state.newest_assistant().created_entity_id == "proj-1"
    assert state.find("a1") is state.find(reply.client_id)


def test_reset_drops_local_messages():
    state = ConversationState("conv-1")
    state.append_optimistic("Hello")

    state.reset("conv-2", [msg("user", "Other", at(0, BASE), message_id="x")])

    assert state.conversation_id == "conv-2"
    assert [m.content for m in state.messages] == ["Other"]
    assert state.newest().message_id == "x"
