import pytest

from runbox.core.errors import (
    DuplicateJobId, InvalidBudget, InvalidJobId, SubmissionTooLarge, UnsupportedLanguage,
)
from runbox.core.models import Decision, ExecutionRequest, Language, TerminalState
from runbox.core.utils import new_job_id, valid_job_id
from runbox.services.execution_service import ExecutionService


@pytest.fixture
def service(settings, fake_runner):
    svc = ExecutionService(settings.model_copy(update={"workers": 1, "queue_capacity": 1}),
                           runner=fake_runner).start()
    yield svc
    fake_runner.release()
    svc.shutdown()


def req(source="print(1)", **kw):
    return ExecutionRequest(language=kw.pop("language", "python"), source=source, **kw)


def test_submit_and_wait(service):
    adm = service.submit(req("hello"))
    assert adm.decision is Decision.ACCEPTED
    assert adm.job_id
    result = adm.result(timeout=5)
    assert result.state is TerminalState.COMPLETED
    assert result.job_id == adm.job_id


def test_job_carries_resolved_budget(service, fake_runner):
    adm = service.submit(req("block", limits_override={"cpuTimeMs": 300}))
    fake_runner.wait_started()
    job = adm.ticket.job
    assert job.language is Language.PYTHON
    assert job.budget.cpu_time_ms == 300
    assert job.budget.wall_time_ms == service.settings.default_limits["wall_time_ms"]


def test_language_is_case_insensitive(service):
    assert service.submit(req("x", language="Python")).accepted


def test_unsupported_language(service):
    with pytest.raises(UnsupportedLanguage):
        service.submit(req(language="cobol"))


def test_language_not_deployed(service):
    # node is a known language but this deployment only runs python
    with pytest.raises(UnsupportedLanguage):
        service.submit(req(language="node"))


def test_invalid_budget(service):
    with pytest.raises(InvalidBudget):
        service.submit(req(limits_override={"memory_bytes": 1}))


def test_source_too_large(service):
    big = "#" * (service.settings.max_source_bytes + 1)
    with pytest.raises(SubmissionTooLarge):
        service.submit(req(big))


def test_stdin_too_large(service):
    with pytest.raises(SubmissionTooLarge):
        service.submit(req(stdin="x" * (service.settings.max_stdin_bytes + 1)))


def test_capacity_rejection_has_no_result(service, fake_runner):
    assert service.submit(req("block")).decision is Decision.ACCEPTED
    fake_runner.wait_started()
    assert service.submit(req("q")).decision is Decision.QUEUED

    adm = service.submit(req("r"))
    assert adm.decision is Decision.REJECTED
    assert not adm.accepted
    assert adm.reason == "queue_full"
    with pytest.raises(RuntimeError):
        adm.result()


def test_cancel_through_service(service, fake_runner):
    service.submit(req("block"))
    fake_runner.wait_started()
    queued = service.submit(req("q"))
    assert service.cancel(queued.job_id) is True
    assert service.cancel(queued.job_id) is False
    result = queued.result(timeout=1)
    assert result.job_id == queued.job_id
    assert result.state is TerminalState.RUNTIME_ERROR
    assert result.detail == "cancelled"
    assert queued.job_id not in fake_runner.dispatched


def test_caller_chosen_job_id(service):
    adm = service.submit(req("x"), job_id="lesson-7_try-2")
    assert adm.job_id == "lesson-7_try-2"
    assert adm.result(timeout=5).job_id == "lesson-7_try-2"


@pytest.mark.parametrize("job_id", ["", "../etc", "a/b", ".hidden", "x" * 65, "white space"])
def test_unsafe_job_id_rejected(service, job_id):
    with pytest.raises(InvalidJobId):
        service.submit(req(), job_id=job_id)


def test_duplicate_job_id_rejected(service, fake_runner):
    service.submit(req("block"), job_id="same")
    fake_runner.wait_started()
    with pytest.raises(DuplicateJobId):
        service.submit(req(), job_id="same")


def test_sinks_see_every_result(service):
    seen = []
    service.add_sink(lambda job, result: seen.append((job.job_id, result.state)))
    adm = service.execute(req("one"), timeout=5)
    assert seen == [(adm.job_id, TerminalState.COMPLETED)]


def test_failing_sink_does_not_lose_result(service):
    def broken(job, result):
        raise IOError("disk full")

    service.add_sink(broken)
    assert service.execute(req("x"), timeout=5).result().state is TerminalState.COMPLETED


def test_languages_and_stats(service):
    assert service.languages() == ["python"]
    st = service.stats()
    assert st["workers"] == 1
    assert st["capacity"] == 1


def test_generated_job_ids_are_safe_and_distinct():
    ids = {new_job_id() for _ in range(2000)}
    assert len(ids) == 2000
    assert all(valid_job_id(i) for i in ids)
    assert all(len(i.split("-")[1]) == 10 for i in ids)
