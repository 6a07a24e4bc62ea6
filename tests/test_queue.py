import asyncio

import pytest

from common.job_schema import InlineResult, JobStatus, TargetFormat
from worker.collaborators import ConversionError
from worker.job_queue import ConversionQueue
from worker.previews import PreviewStore

from conftest import FakeConverter, make_image_bytes, small_request, staged_request


def _names(jobs):
    return [job.source.filename for job in jobs]


# ---------- admission ----------

def test_add_within_limit_clears_error():
    queue = ConversionQueue(FakeConverter())
    jobs = queue.add_jobs([small_request("a1"), small_request("a2")])
    assert _names(jobs) == ["a1", "a2"]
    assert all(job.status == JobStatus.PENDING and job.progress == 0 for job in jobs)
    assert queue.error is None
    assert queue.pending_count == 2


def test_six_files_admit_five_in_order():
    queue = ConversionQueue(FakeConverter())
    jobs = queue.add_jobs([small_request(f"a{i}") for i in range(1, 7)])
    assert _names(jobs) == ["a1", "a2", "a3", "a4", "a5"]
    assert _names(queue.jobs) == ["a1", "a2", "a3", "a4", "a5"]
    assert queue.error == "Only 5 items added. Queue limit reached."


@pytest.mark.parametrize("already_pending,batch,expected", [
    (0, 3, 3),
    (3, 3, 2),
    (4, 2, 1),
    (5, 1, 0),
    (2, 10, 3),
])
def test_admission_bound(already_pending, batch, expected):
    queue = ConversionQueue(FakeConverter())
    queue.add_jobs([small_request(f"old{i}") for i in range(already_pending)])
    admitted = queue.add_jobs([small_request(f"new{i}") for i in range(batch)])
    assert len(admitted) == expected
    assert _names(admitted) == [f"new{i}" for i in range(expected)]
    assert queue.pending_count == min(5, already_pending + batch)
    if batch > expected:
        assert queue.error is not None
    else:
        assert queue.error is None


def test_single_slot_message_is_singular():
    queue = ConversionQueue(FakeConverter())
    queue.add_jobs([small_request(f"x{i}") for i in range(4)])
    queue.add_jobs([small_request("y1"), small_request("y2")])
    assert queue.error == "Only 1 item added. Queue limit reached."


def test_full_queue_rejects_everything():
    queue = ConversionQueue(FakeConverter())
    queue.add_jobs([small_request(f"x{i}") for i in range(5)])
    assert queue.add_jobs([small_request("late")]) == []
    assert len(queue.jobs) == 5
    assert queue.error.startswith("Queue limit reached (max 5 pending items)")


def test_finished_jobs_do_not_count_against_limit():
    queue = ConversionQueue(FakeConverter())
    queue.add_jobs([small_request(f"x{i}") for i in range(5)])
    asyncio.run(queue.process_queue())
    admitted = queue.add_jobs([small_request(f"y{i}") for i in range(5)])
    assert len(admitted) == 5
    assert len(queue.jobs) == 10


def test_add_accepts_plain_dicts():
    queue = ConversionQueue(FakeConverter())
    jobs = queue.add_jobs([{
        "source": {"kind": "bytes", "filename": "a.png", "data": b"x"},
        "target_format": "jpg",
    }])
    assert jobs[0].target_format is TargetFormat.JPEG
    assert jobs[0].quality == 80


# ---------- processing ----------

def test_processes_sequentially_in_order():
    fake = FakeConverter()
    queue = ConversionQueue(fake)
    queue.add_jobs([small_request(f"j{i}") for i in range(1, 5)])

    asyncio.run(queue.process_queue())

    assert fake.events == [
        ("start", "j1"), ("end", "j1"),
        ("start", "j2"), ("end", "j2"),
        ("start", "j3"), ("end", "j3"),
        ("start", "j4"), ("end", "j4"),
    ]
    assert all(job.status == JobStatus.COMPLETED for job in queue.jobs)
    assert all(job.progress == 100 for job in queue.jobs)
    assert queue.is_processing is False


def test_job_is_processing_while_its_call_is_in_flight():
    seen = {}
    queue = None

    def on_call(name):
        seen[name] = [job.status for job in queue.jobs]

    fake = FakeConverter(on_call=on_call)
    queue = ConversionQueue(fake)
    queue.add_jobs([small_request("j1"), small_request("j2")])
    asyncio.run(queue.process_queue())

    assert seen["j1"] == [JobStatus.PROCESSING, JobStatus.PENDING]
    assert seen["j2"] == [JobStatus.COMPLETED, JobStatus.PROCESSING]


def test_failure_does_not_stop_remaining_jobs():
    fake = FakeConverter(failures={"a3": ConversionError("Conversion failed")})
    queue = ConversionQueue(fake)
    queue.add_jobs([small_request(f"a{i}") for i in range(1, 7)])

    asyncio.run(queue.process_queue())

    statuses = {job.source.filename: job for job in queue.jobs}
    assert statuses["a3"].status == JobStatus.ERROR
    assert statuses["a3"].error == "Conversion failed"
    assert statuses["a3"].result is None
    for name in ("a1", "a2", "a4", "a5"):
        assert statuses[name].status == JobStatus.COMPLETED
        assert statuses[name].error is None
    assert [call[1] for call in fake.calls] == ["a1", "a2", "a3", "a4", "a5"]


def test_unexpected_exception_becomes_job_error():
    fake = FakeConverter(failures={"b": RuntimeError("socket closed"), "c": ValueError()})
    queue = ConversionQueue(fake)
    queue.add_jobs([small_request("b"), small_request("c")])

    asyncio.run(queue.process_queue())

    b, c = queue.jobs
    assert b.error == "socket closed"
    assert c.error == "Unknown error"


def test_completed_result_is_attached():
    queue = ConversionQueue(FakeConverter())
    (job,) = queue.add_jobs([small_request("pic.png", fmt="png", quality=42)])
    asyncio.run(queue.process_queue())
    assert isinstance(job.result, InlineResult)
    assert job.result.data == b"converted-pic.png"


def test_collaborator_receives_format_and_quality():
    fake = FakeConverter()
    queue = ConversionQueue(fake)
    queue.add_jobs([small_request("pic.png", fmt="jpg", quality=42)])
    asyncio.run(queue.process_queue())
    assert fake.calls == [("small", "pic.png", TargetFormat.JPEG, 42)]


def test_large_jobs_route_to_large_collaborator():
    fake = FakeConverter()
    queue = ConversionQueue(fake)
    queue.add_jobs([small_request("small.png"), staged_request("big.tif")])
    asyncio.run(queue.process_queue())
    assert [(kind, name) for kind, name, _, _ in fake.calls] == [
        ("small", "small.png"),
        ("large", "big.tif"),
    ]


def test_local_mode_converts_small_jobs_in_process():
    local_calls = []

    async def local_converter(source, target_format, quality):
        local_calls.append(source.filename)
        return InlineResult(data=b"local", format=target_format, size=5)

    fake = FakeConverter()
    queue = ConversionQueue(fake, local_converter=local_converter)
    queue.add_jobs([small_request("small.png"), staged_request("big.tif")])

    asyncio.run(queue.process_queue(local_mode=True))

    assert local_calls == ["small.png"]
    assert [name for _, name, _, _ in fake.calls] == ["big.tif"]
    assert all(job.status == JobStatus.COMPLETED for job in queue.jobs)


def test_local_mode_with_real_converter():
    queue = ConversionQueue(FakeConverter())
    (job,) = queue.add_jobs([small_request("red.png", fmt="jpeg", data=make_image_bytes("PNG"))])
    asyncio.run(queue.process_queue(local_mode=True))
    assert job.status == JobStatus.COMPLETED
    assert job.result.data[:2] == b"\xff\xd8"
    assert (job.result.width, job.result.height) == (32, 24)


def test_reentrant_call_is_a_noop():
    inner_calls = []
    queue = None

    def on_call(name):
        inner_calls.append(asyncio.ensure_future(queue.process_queue()))

    fake = FakeConverter(on_call=on_call)
    queue = ConversionQueue(fake)
    queue.add_jobs([small_request("a"), small_request("b")])

    async def scenario():
        await queue.process_queue()
        await asyncio.gather(*inner_calls)

    asyncio.run(scenario())
    assert [name for _, name, _, _ in fake.calls] == ["a", "b"]


def test_jobs_added_during_run_wait_for_next_run():
    queue = None
    added = []

    def on_call(name):
        if name == "a":
            added.extend(queue.add_jobs([small_request("late")]))

    fake = FakeConverter(on_call=on_call)
    queue = ConversionQueue(fake)
    queue.add_jobs([small_request("a")])

    asyncio.run(queue.process_queue())
    assert added[0].status == JobStatus.PENDING

    asyncio.run(queue.process_queue())
    assert added[0].status == JobStatus.COMPLETED
    assert [name for _, name, _, _ in fake.calls] == ["a", "late"]


def test_removed_in_flight_result_is_discarded():
    queue = None

    def on_call(name):
        if name == "a":
            queue.remove_job(queue.jobs[0].id)

    fake = FakeConverter(on_call=on_call)
    queue = ConversionQueue(fake)
    queue.add_jobs([small_request("a"), small_request("b")])

    asyncio.run(queue.process_queue())

    assert _names(queue.jobs) == ["b"]
    assert queue.jobs[0].status == JobStatus.COMPLETED


def test_job_removed_before_its_turn_is_skipped():
    queue = None

    def on_call(name):
        if name == "a":
            queue.remove_job(queue.jobs[1].id)

    fake = FakeConverter(on_call=on_call)
    queue = ConversionQueue(fake)
    queue.add_jobs([small_request("a"), small_request("b"), small_request("c")])

    asyncio.run(queue.process_queue())

    assert [name for _, name, _, _ in fake.calls] == ["a", "c"]


# ---------- retry ----------

def test_retry_resets_error_job():
    fake = FakeConverter(failures={"a": ConversionError("Conversion failed")})
    queue = ConversionQueue(fake)
    (job,) = queue.add_jobs([small_request("a")])
    asyncio.run(queue.process_queue())

    queue.retry_job(job.id, quality=30)

    assert job.status == JobStatus.PENDING
    assert job.error is None and job.result is None
    assert job.progress == 0
    assert job.quality == 30


def test_retry_resets_completed_job_and_reprocesses():
    fake = FakeConverter()
    queue = ConversionQueue(fake)
    (job,) = queue.add_jobs([small_request("a")])
    asyncio.run(queue.process_queue())
    queue.retry_job(job.id)
    assert job.status == JobStatus.PENDING and job.result is None
    assert job.quality == 80

    asyncio.run(queue.process_queue())
    assert job.status == JobStatus.COMPLETED
    assert len(fake.calls) == 2


def test_retry_in_flight_is_noop():
    queue = None
    snapshot = {}

    def on_call(name):
        job = queue.jobs[0]
        queue.retry_job(job.id, quality=10)
        snapshot["status"] = job.status
        snapshot["quality"] = job.quality

    queue = ConversionQueue(FakeConverter(on_call=on_call))
    queue.add_jobs([small_request("a")])
    asyncio.run(queue.process_queue())

    assert snapshot == {"status": JobStatus.PROCESSING, "quality": 80}
    assert queue.jobs[0].status == JobStatus.COMPLETED


def test_retry_unknown_id_is_noop():
    queue = ConversionQueue(FakeConverter())
    queue.add_jobs([small_request("a")])
    before = [job.model_dump() for job in queue.jobs]
    queue.retry_job("missing")
    assert [job.model_dump() for job in queue.jobs] == before


# ---------- remove / clear ----------

def _mixed_queue():
    fake = FakeConverter(failures={"bad": ConversionError("Conversion failed")})
    queue = ConversionQueue(fake)
    queue.add_jobs([small_request("ok"), small_request("bad")])
    asyncio.run(queue.process_queue())
    queue.add_jobs([small_request("waiting1"), small_request("waiting2")])
    return queue


def test_clear_completed_keeps_pending_untouched():
    queue = _mixed_queue()
    waiting = [job for job in queue.jobs if job.status == JobStatus.PENDING]
    before = [job.model_dump() for job in waiting]

    queue.clear_completed()

    assert _names(queue.jobs) == ["waiting1", "waiting2"]
    assert [job.model_dump() for job in queue.jobs] == before
    assert all(a is b for a, b in zip(queue.jobs, waiting))


def test_clear_completed_leaves_processing_job():
    queue = None
    remaining = {}

    def on_call(name):
        queue.clear_completed()
        remaining[name] = _names(queue.jobs)

    queue = ConversionQueue(FakeConverter(on_call=on_call))
    queue.add_jobs([small_request("a"), small_request("b")])
    asyncio.run(queue.process_queue())

    assert remaining["a"] == ["a", "b"]
    assert remaining["b"] == ["b"]


def test_clear_all_empties_queue():
    queue = _mixed_queue()
    queue.add_jobs([small_request(f"x{i}") for i in range(5)])
    assert queue.error is not None
    queue.clear_all()
    assert queue.jobs == ()
    assert queue.error is None


def test_remove_unknown_id_leaves_state_unchanged():
    queue = ConversionQueue(FakeConverter())
    queue.add_jobs([small_request(f"x{i}") for i in range(6)])
    before = ([job.model_dump() for job in queue.jobs], queue.error)

    queue.remove_job("nope")

    assert ([job.model_dump() for job in queue.jobs], queue.error) == before


def test_remove_job_any_status():
    queue = _mixed_queue()
    for job in list(queue.jobs):
        queue.remove_job(job.id)
    assert queue.jobs == ()


def test_clear_error():
    queue = ConversionQueue(FakeConverter())
    queue.add_jobs([small_request(f"x{i}") for i in range(6)])
    queue.clear_error()
    assert queue.error is None
    assert len(queue.jobs) == 5


# ---------- previews ----------

def test_previews_allocated_and_released_once(tmp_path, mocker):
    previews = PreviewStore(tmp_path / "previews")
    release = mocker.spy(previews, "release")
    queue = ConversionQueue(FakeConverter(), previews=previews)
    image = make_image_bytes("PNG", size=(400, 300))

    jobs = queue.add_jobs([small_request(f"p{i}.png", data=image) for i in range(3)])
    paths = [job.preview for job in jobs]
    assert all(path is not None and path.exists() for path in paths)
    assert len(previews) == 3

    queue.remove_job(jobs[0].id)
    queue.remove_job(jobs[0].id)
    assert not paths[0].exists()
    assert release.call_count == 1

    asyncio.run(queue.process_queue())
    queue.clear_completed()
    queue.clear_all()

    assert release.call_count == 3
    assert len(previews) == 0
    assert not any(path.exists() for path in paths)


def test_no_preview_for_undecodable_or_staged_source(tmp_path):
    previews = PreviewStore(tmp_path / "previews")
    queue = ConversionQueue(FakeConverter(), previews=previews)
    jobs = queue.add_jobs([small_request("junk.bin"), staged_request("big.tif")])
    assert [job.preview for job in jobs] == [None, None]
    assert len(previews) == 0


def test_oversized_image_gets_no_preview_but_is_admitted(tmp_path, monkeypatch):
    from PIL import Image

    # Anything above 2 * MAX_IMAGE_PIXELS is refused by Pillow outright
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
    previews = PreviewStore(tmp_path / "previews")
    queue = ConversionQueue(FakeConverter(), previews=previews)
    ok = make_image_bytes("PNG", size=(8, 8))
    huge = make_image_bytes("PNG", size=(64, 64))

    jobs = queue.add_jobs([small_request("ok.png", data=ok), small_request("huge.png", data=huge)])

    assert _names(queue.jobs) == ["ok.png", "huge.png"]
    assert jobs[0].preview is not None and jobs[0].preview.exists()
    assert jobs[1].preview is None
    assert len(previews) == 1

    queue.clear_all()
    assert len(previews) == 0
