import asyncio

import pytest
import pytest_asyncio

from app.errors import AggregateEmptyError, GenerationFailure, InputError, NotFoundError
from app.extractor import OutcomeStatus
from app.pipeline import analyze, send_message
from app.stores import AnalysisStore, ConversationStore
from conftest import RecordingGenerator, make_pdf


def _write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return str(path)


# -----------------------------------------------------------------------------
# analyze()
# -----------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_mixed_batch_keeps_only_successful_documents(tmp_path, generator):
    report = make_pdf(tmp_path / "stored-report", ["BP 120/80"])
    notes = _write(tmp_path, "stored-notes", "")
    scan = tmp_path / "stored-scan"
    scan.write_bytes(b"definitely not a docx")
    store = AnalysisStore()

    record = await analyze(
        [(str(report), "report.pdf"), (notes, "notes.txt"), (str(scan), "scan.docx")],
        store=store,
        generator=generator,
    )

    assert record.requested_count == 3
    assert record.succeeded_count == 1
    statuses = {o.filename: o.status for o in record.outcomes}
    assert statuses == {
        "report.pdf": OutcomeStatus.SUCCESS,
        "notes.txt": OutcomeStatus.EMPTY_CONTENT,
        "scan.docx": OutcomeStatus.FAILURE,
    }
    failed = [o for o in record.outcomes if o.status is OutcomeStatus.FAILURE][0]
    assert failed.error

    assert record.context.count("=== Document: ") == 1
    assert "=== Document: report.pdf ===" in record.context
    assert "BP 120/80" in record.context
    assert generator.generate_calls == [record.context]
    assert store.get(record.id) is record


@pytest.mark.asyncio
async def test_nothing_extracted_raises_before_generation(tmp_path, generator):
    store = AnalysisStore()
    files = [(_write(tmp_path, "a", "   "), "a.txt"), (str(tmp_path / "none"), "b.png")]

    with pytest.raises(AggregateEmptyError) as exc:
        await analyze(files, store=store, generator=generator)

    assert generator.generate_calls == []
    assert len(store) == 0
    assert [d["status"] for d in exc.value.documents] == ["empty_content", "failure"]


@pytest.mark.asyncio
async def test_no_files_is_input_error(generator):
    with pytest.raises(InputError):
        await analyze([], store=AnalysisStore(), generator=generator)


@pytest.mark.asyncio
async def test_generation_failure_stores_nothing(tmp_path):
    store = AnalysisStore()
    failing = RecordingGenerator(fail_with=GenerationFailure("upstream down"))

    with pytest.raises(GenerationFailure):
        await analyze([(_write(tmp_path, "a", "BP 120/80"), "a.txt")], store=store, generator=failing)

    assert len(store) == 0


# -----------------------------------------------------------------------------
# send_message()
# -----------------------------------------------------------------------------
@pytest_asyncio.fixture
async def stored_analysis(tmp_path, generator):
    store = AnalysisStore()
    record = await analyze(
        [(_write(tmp_path, "labs", "HbA1c 6.1%"), "labs.txt")], store=store, generator=generator
    )
    return store, record


@pytest.mark.asyncio
async def test_first_message_starts_conversation(stored_analysis, generator):
    analyses, record = stored_analysis
    conversations = ConversationStore()

    result = await send_message(
        "What is the HbA1c?", record.id, None,
        analyses=analyses, conversations=conversations, generator=generator,
    )

    assert result.message_count == 1
    assert result.response == "answer 1: What is the HbA1c?"
    context, history, message = generator.chat_calls[0]
    assert "HbA1c 6.1%" in context
    assert record.summary in context
    assert history == []
    assert message == "What is the HbA1c?"
    assert len(conversations.get(result.conversation_id)) == 1


@pytest.mark.asyncio
async def test_follow_up_replays_full_history(stored_analysis, generator):
    analyses, record = stored_analysis
    conversations = ConversationStore()
    kwargs = dict(analyses=analyses, conversations=conversations, generator=generator)

    first = await send_message("u1", record.id, None, **kwargs)
    await send_message("u2", record.id, first.conversation_id, **kwargs)
    third = await send_message("u3", record.id, first.conversation_id, **kwargs)

    assert third.conversation_id == first.conversation_id
    assert third.message_count == 3
    _, history, message = generator.chat_calls[-1]
    flat = [x for t in history for x in (t.user_message, t.assistant_response)]
    assert flat + [message] == ["u1", "answer 1: u1", "u2", "answer 2: u2", "u3"]


@pytest.mark.asyncio
async def test_unknown_conversation_id_gets_fresh_id(stored_analysis, generator):
    analyses, record = stored_analysis
    conversations = ConversationStore()

    result = await send_message(
        "hello", record.id, "not-issued-by-us",
        analyses=analyses, conversations=conversations, generator=generator,
    )

    assert result.conversation_id != "not-issued-by-us"
    assert result.message_count == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("message", [None, "", "   \n"])
async def test_empty_message_is_input_error(stored_analysis, generator, message):
    analyses, record = stored_analysis
    with pytest.raises(InputError):
        await send_message(
            message, record.id, None,
            analyses=analyses, conversations=ConversationStore(), generator=generator,
        )
    assert generator.chat_calls == []


@pytest.mark.asyncio
async def test_missing_analysis_id_is_input_error(generator):
    with pytest.raises(InputError):
        await send_message(
            "hi", None, None,
            analyses=AnalysisStore(), conversations=ConversationStore(), generator=generator,
        )


@pytest.mark.asyncio
async def test_unknown_analysis_is_not_found(generator):
    with pytest.raises(NotFoundError):
        await send_message(
            "hi", "missing", None,
            analyses=AnalysisStore(), conversations=ConversationStore(), generator=generator,
        )


@pytest.mark.asyncio
async def test_chat_generation_failure_appends_nothing(stored_analysis):
    analyses, record = stored_analysis
    conversations = ConversationStore()
    failing = RecordingGenerator(fail_with=GenerationFailure("timed out"))

    with pytest.raises(GenerationFailure):
        await send_message(
            "hi", record.id, None,
            analyses=analyses, conversations=conversations, generator=failing,
        )

    assert len(conversations) == 0


class SlowGenerator(RecordingGenerator):
    async def chat(self, context, history, message):
        await asyncio.sleep(0.01)
        return await super().chat(context, history, message)


@pytest.mark.asyncio
async def test_concurrent_sends_to_one_conversation_serialise(stored_analysis):
    analyses, record = stored_analysis
    conversations = ConversationStore()
    slow = SlowGenerator()
    kwargs = dict(analyses=analyses, conversations=conversations, generator=slow)
    first = await send_message("u0", record.id, None, **kwargs)

    results = await asyncio.gather(*[
        send_message(f"u{i}", record.id, first.conversation_id, **kwargs) for i in range(1, 6)
    ])

    assert sorted(r.message_count for r in results) == [2, 3, 4, 5, 6]
    assert len(conversations.get(first.conversation_id)) == 6
    # each call saw every turn committed before it
    assert [len(h) for _, h, _ in slow.chat_calls] == [0, 1, 2, 3, 4, 5]


@pytest.mark.asyncio
async def test_failed_first_sends_leave_no_send_locks(stored_analysis):
    analyses, record = stored_analysis
    conversations = ConversationStore()
    failing = RecordingGenerator(fail_with=GenerationFailure("timed out"))

    for _ in range(50):
        with pytest.raises(GenerationFailure):
            await send_message(
                "hi", record.id, None,
                analyses=analyses, conversations=conversations, generator=failing,
            )

    assert conversations._send_locks == {}
    assert len(conversations) == 0


class GatedGenerator(RecordingGenerator):
    """chat() parks until the test opens the gate."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def chat(self, context, history, message):
        self.entered.set()
        await self.gate.wait()
        return await super().chat(context, history, message)


@pytest.mark.asyncio
async def test_conversation_deleted_mid_send_stays_deleted(stored_analysis):
    analyses, record = stored_analysis
    conversations = ConversationStore()
    first = await send_message(
        "u1", record.id, None,
        analyses=analyses, conversations=conversations, generator=RecordingGenerator(),
    )
    gated = GatedGenerator()

    pending = asyncio.create_task(send_message(
        "u2", record.id, first.conversation_id,
        analyses=analyses, conversations=conversations, generator=gated,
    ))
    await gated.entered.wait()
    assert conversations.delete_one(first.conversation_id)
    gated.gate.set()

    with pytest.raises(NotFoundError):
        await pending

    assert conversations.history(first.conversation_id) == []
    assert len(conversations) == 0
    assert conversations._send_locks == {}


class RecordingEvents:
    def __init__(self):
        self.emitted = []

    async def emit(self, event_type, payload, correlation_id=None):
        self.emitted.append((event_type, payload, correlation_id))


@pytest.mark.asyncio
async def test_committed_results_are_announced(tmp_path, generator):
    events = RecordingEvents()
    analyses = AnalysisStore()
    record = await analyze(
        [(_write(tmp_path, "labs", "HbA1c 6.1%"), "labs.txt")],
        store=analyses, generator=generator, events=events,
    )
    result = await send_message(
        "hi", record.id, None,
        analyses=analyses, conversations=ConversationStore(), generator=generator, events=events,
    )

    assert [(t, c) for t, _, c in events.emitted] == [
        ("AnalysisCompleted", record.id),
        ("AnswerGenerated", result.conversation_id),
    ]
    assert events.emitted[0][1]["successfullyParsed"] == 1
    assert events.emitted[1][1]["messageCount"] == 1
