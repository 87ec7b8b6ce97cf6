"""
Tests for execution/legal_chatbot/streaming.py

Covers: SSE frame format, emitter state transitions, progress clamping,
        single result frame and writes after termination.
"""

import json
import threading


def _parse(frame):
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    return json.loads(frame[len("data: "):-2])


class TestFormatFrame:

    def test_format(self):
        from execution.legal_chatbot.streaming import format_frame
        assert format_frame({"type": "progress", "percent": 5}) == 'data: {"type": "progress", "percent": 5}\n\n'

    def test_non_ascii_kept(self):
        from execution.legal_chatbot.streaming import format_frame
        assert "Législation" in format_frame({"message": "Législation"})


class TestStreamEmitter:

    def test_initial_state(self):
        from execution.legal_chatbot.streaming import StreamEmitter, EmitterState
        emitter = StreamEmitter()
        assert emitter.state is EmitterState.IDLE
        emitter.start()
        assert emitter.state is EmitterState.STREAMING

    def test_progress_then_result(self):
        from execution.legal_chatbot.aggregator import AnswerEnvelope
        from execution.legal_chatbot.streaming import StreamEmitter, EmitterState

        emitter = StreamEmitter()
        emitter.start()
        assert emitter.progress(40, "Zoeken") is True
        assert emitter.finish(AnswerEnvelope(answer="Klaar", conversation_token="tok")) is True
        assert emitter.state is EmitterState.TERMINATED

        frames = [_parse(f) for f in emitter.frames()]
        assert frames[0] == {"type": "progress", "percent": 40, "message": "Zoeken"}
        assert frames[1]["type"] == "result"
        assert frames[1]["data"]["answer"] == "Klaar"
        assert frames[1]["data"]["conversation_token"] == "tok"

    def test_progress_never_decreases(self):
        from execution.legal_chatbot.streaming import StreamEmitter

        emitter = StreamEmitter()
        emitter.progress(60, "a")
        emitter.progress(30, "b")
        emitter.progress(150, "c")
        emitter.progress(-5, "d")
        emitter.finish({"answer": ""})

        percents = [_parse(f)["percent"] for f in emitter.frames() if _parse(f)["type"] == "progress"]
        assert percents == [60, 60, 100, 100]

    def test_only_one_result_frame(self):
        from execution.legal_chatbot.streaming import StreamEmitter

        emitter = StreamEmitter()
        assert emitter.finish({"answer": "eerste"}) is True
        assert emitter.finish({"answer": "tweede"}) is False

        frames = [_parse(f) for f in emitter.frames()]
        assert len(frames) == 1
        assert frames[0]["data"]["answer"] == "eerste"

    def test_no_progress_after_termination(self):
        from execution.legal_chatbot.streaming import StreamEmitter

        emitter = StreamEmitter()
        emitter.finish({"answer": "x"})
        assert emitter.progress(99, "te laat") is False
        assert emitter.frames_written == 1

    def test_close_without_result(self):
        from execution.legal_chatbot.streaming import StreamEmitter

        emitter = StreamEmitter()
        emitter.progress(10, "a")
        emitter.close()
        assert emitter.terminated
        assert emitter.finish({"answer": "x"}) is False
        assert len(list(emitter.frames())) == 1

    def test_leaving_frames_early_terminates(self):
        from execution.legal_chatbot.streaming import StreamEmitter

        emitter = StreamEmitter()
        emitter.progress(10, "a")
        emitter.progress(20, "b")
        generator = emitter.frames()
        next(generator)
        generator.close()
        assert emitter.terminated
        assert emitter.progress(30, "c") is False

    def test_frames_block_until_finished(self):
        from execution.legal_chatbot.streaming import StreamEmitter

        emitter = StreamEmitter()
        emitter.start()

        def producer():
            for percent in (10, 50, 90):
                emitter.progress(percent, "")
            emitter.finish({"answer": "ok"})

        thread = threading.Thread(target=producer)
        thread.start()
        frames = [_parse(f) for f in emitter.frames(poll_timeout=0.05)]
        thread.join()

        assert [f["type"] for f in frames] == ["progress", "progress", "progress", "result"]

    def test_concurrent_writers_keep_frames_whole(self):
        from execution.legal_chatbot.streaming import StreamEmitter

        emitter = StreamEmitter()
        emitter.start()

        def writer(n):
            for i in range(50):
                emitter.progress(i, f"writer {n}")

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        emitter.finish({"answer": "ok"})

        frames = [_parse(f) for f in emitter.frames()]
        assert len(frames) == 201
        percents = [f["percent"] for f in frames[:-1]]
        assert percents == sorted(percents)
        assert frames[-1]["type"] == "result"
