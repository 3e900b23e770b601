import asyncio
from datetime import timedelta

import pytest

from src.assistant_sync.core.state_machine import RevealState
from src.assistant_sync.domain.chat_models import Message, utc_now
from src.assistant_sync.services.stream_presenter import StreamPresenter, reveal_frames


TEXT = "Sprint 4 closed with   twelve stories done.\nTwo slipped."


def _assistant(content=TEXT, age_seconds=0.0, **kwargs):
    return Message(role="assistant", content=content, created_at=utc_now() - timedelta(seconds=age_seconds), **kwargs)


def _run_to_completion(presenter, limit=200):
    outputs = []
    for _ in range(limit):
        if presenter.session is None or presenter.session.state != RevealState.REVEALING:
            break
        outputs.append(presenter.step())
    return outputs


def test_reveal_frames_are_growing_word_prefixes():
    frames = reveal_frames(TEXT)
    assert frames[0] == "Sprint"
    assert frames[-1] == TEXT
    assert all(TEXT.startswith(f) for f in frames)
    assert all(len(a) < len(b) for a, b in zip(frames, frames[1:]))
    assert len(frames) == len(TEXT.split())


def test_reveal_frames_end_on_full_text_with_trailing_whitespace():
    assert reveal_frames("done  ") == ["done", "done  "]
    assert reveal_frames("") == [""]
    assert reveal_frames("   ") == ["   "]


def test_new_reply_reveals_to_full_text():
    frames = []
    presenter = StreamPresenter(on_frame=lambda key, text, state: frames.append((text, state)))
    message = _assistant()

    assert presenter.observe([message], just_streamed=True) == RevealState.REVEALING
    assert presenter.display_text(message) == ""

    outputs = _run_to_completion(presenter)

    assert outputs[-1] == TEXT
    assert all(len(a) < len(b) for a, b in zip(outputs, outputs[1:]))
    assert all(TEXT.startswith(o) for o in outputs)
    assert frames[-1] == (TEXT, RevealState.COMPLETE)
    assert presenter.state_of(message) == RevealState.COMPLETE
    assert presenter.display_text(message) == TEXT


def test_history_messages_render_complete_with_zero_steps():
    presenter = StreamPresenter()
    old = _assistant(age_seconds=60)

    assert presenter.observe([old]) == RevealState.COMPLETE
    assert presenter.steps == 0
    assert presenter.display_text(old) == TEXT

    recent_history = _assistant("Loaded from history")
    presenter.mark_history([recent_history])
    assert presenter.observe([recent_history]) == RevealState.COMPLETE
    assert presenter.steps == 0


def test_only_newest_assistant_non_directive_messages_reveal():
    presenter = StreamPresenter()
    reply = _assistant()
    user = Message(role="user", content="Thanks!")
    directive = _assistant('{"action": "create_project", "project_name": "Atlas"}')

    assert presenter.observe([reply, user]) == RevealState.COMPLETE
    assert presenter.observe([directive]) == RevealState.COMPLETE
    assert presenter.steps == 0


def test_recent_reply_from_poll_is_revealed():
    presenter = StreamPresenter(recency_window=5.0)
    assert presenter.observe([_assistant(age_seconds=1)]) == RevealState.REVEALING
    assert presenter.observe([_assistant("Older reply", age_seconds=6)]) == RevealState.COMPLETE


def test_finish_shows_full_text_immediately():
    frames = []
    presenter = StreamPresenter(on_frame=lambda key, text, state: frames.append(state))
    message = _assistant()
    presenter.observe([message], just_streamed=True)
    presenter.step()

    presenter.finish()

    assert presenter.display_text(message) == TEXT
    assert presenter.state_of(message) == RevealState.COMPLETE
    assert frames[-1] == RevealState.COMPLETE
    steps = presenter.steps
    presenter.step()
    assert presenter.steps == steps


def test_content_change_while_revealing_restarts():
    presenter = StreamPresenter()
    message = _assistant("First draft of the answer")
    presenter.observe([message], just_streamed=True)
    presenter.step()
    presenter.step()

    revised = message.model_copy(update={"content": "Final answer"})
    assert presenter.observe([revised]) == RevealState.REVEALING
    assert presenter.display_text(revised) == ""
    assert _run_to_completion(presenter) == ["Final", "Final answer"]


def test_completed_message_is_not_revealed_again():
    presenter = StreamPresenter()
    reply = _assistant()
    presenter.observe([reply], just_streamed=True)
    _run_to_completion(presenter)
    user = Message(role="user", content="next")

    presenter.observe([reply, user])
    steps = presenter.steps
    # the user message was rolled back; the old reply is newest again
    assert presenter.observe([reply]) == RevealState.COMPLETE
    assert presenter.steps == steps


def test_disabled_presenter_never_reveals():
    presenter = StreamPresenter()
    presenter.set_enabled(False)
    assert presenter.observe([_assistant()], just_streamed=True) == RevealState.COMPLETE


@pytest.mark.asyncio
async def test_ticker_runs_on_event_loop():
    done = asyncio.Event()

    def on_frame(key, text, state):
        if state == RevealState.COMPLETE:
            done.set()

    presenter = StreamPresenter(interval=0, on_frame=on_frame)
    message = _assistant("one two three")
    presenter.observe([message], just_streamed=True)

    await asyncio.wait_for(done.wait(), timeout=2)
    assert presenter.display_text(message) == "one two three"
    assert presenter.steps == 3


@pytest.mark.asyncio
async def test_close_stops_ticks_without_callbacks():
    frames = []
    presenter = StreamPresenter(interval=0.01, on_frame=lambda *args: frames.append(args))
    presenter.observe([_assistant(" ".join(["word"] * 50))], just_streamed=True)
    await asyncio.sleep(0.03)

    presenter.close()
    seen = len(frames)
    await asyncio.sleep(0.05)

    assert len(frames) == seen
    assert presenter.session is None
