import pytest

from shared.loop_runner import (
    COMMIT_PER_ENTITY,
    StockLoopRunner,
    unique_codes,
)
from shared.store import BACKUP_SUFFIX, BackupError, CommitError, JsonStore, StoreDecodeError
from basicfinance.sina_client import FetchError


class RecordingSleep:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


def make_runner(tmp_path, process, **kwargs):
    sleep = RecordingSleep()
    kwargs.setdefault("target", tmp_path / "basic_finance.json")
    runner = StockLoopRunner(process=process, store=JsonStore(), sleep=sleep, **kwargs)
    return runner, sleep


def payload_for(code):
    return {"2015年年报": {"revenue": code}}


def test_all_succeed_key_set_equals_input(tmp_path):
    codes = ["600000", "000001", "300750"]
    runner, _ = make_runner(tmp_path, payload_for)

    report = runner.run(codes)

    assert set(report.results) == set(codes)
    assert report.succeeded_count == 3
    assert report.failed_count == 0
    assert report.committed
    assert JsonStore().load(tmp_path / "basic_finance.json") == {c: payload_for(c) for c in codes}


def test_failed_entity_excluded_and_loop_continues(tmp_path):
    seen = []

    def process(code):
        seen.append(code)
        if code == "000001":
            raise FetchError("connection reset", code)
        return payload_for(code)

    runner, _ = make_runner(tmp_path, process)
    report = runner.run(["600000", "000001", "300750", "600519"])

    assert seen == ["600000", "000001", "300750", "600519"]
    assert [r.code for r in report.succeeded] == ["600000", "300750", "600519"]
    assert [r.code for r in report.failed] == ["000001"]
    assert isinstance(report.failed[0].error, FetchError)
    assert "000001" not in JsonStore().load(tmp_path / "basic_finance.json")


def test_any_exception_is_isolated(tmp_path):
    def process(code):
        if code == "bad":
            raise KeyError("unexpected")
        return payload_for(code)

    runner, _ = make_runner(tmp_path, process)
    report = runner.run(["bad", "600000"])
    assert list(report.results) == ["600000"]


def test_delay_between_entities_only(tmp_path):
    runner, sleep = make_runner(tmp_path, payload_for, delay_seconds=3)
    runner.run(["a", "b", "c"])
    assert sleep.calls == [3, 3]


def test_zero_delay_never_sleeps(tmp_path):
    runner, sleep = make_runner(tmp_path, payload_for, delay_seconds=0)
    runner.run(["a", "b"])
    assert sleep.calls == []


def test_duplicates_processed_once():
    assert unique_codes(["b", "a", "b", "c", "a"]) == ["b", "a", "c"]


def test_results_merged_into_prior_store(tmp_path):
    store = JsonStore()
    target = tmp_path / "basic_finance.json"
    store.commit(target, {"600000": {"old": {}}, "000002": {"kept": {}}})

    runner, _ = make_runner(tmp_path, payload_for, target=target)
    runner.run(["600000", "000001"])

    assert store.load(target) == {
        "600000": payload_for("600000"),
        "000002": {"kept": {}},
        "000001": payload_for("000001"),
    }
    assert store.load(tmp_path / ("basic_finance.json" + BACKUP_SUFFIX)) == {
        "600000": {"old": {}},
        "000002": {"kept": {}},
    }


def test_skip_existing_aggregate(tmp_path):
    store = JsonStore()
    target = tmp_path / "basic_finance.json"
    store.commit(target, {"600000": {"2014年年报": {}}, "000001": {}})
    seen = []

    def process(code):
        seen.append(code)
        return payload_for(code)

    runner, sleep = make_runner(tmp_path, process, target=target, skip_existing=True, delay_seconds=1)
    report = runner.run(["600000", "000001", "300750"])

    # an empty stored entry does not count as collected
    assert seen == ["000001", "300750"]
    assert report.skipped == ["600000"]
    assert sleep.calls == [1]
    assert store.load(target)["600000"] == {"2014年年报": {}}


def test_skip_existing_disabled_reprocesses(tmp_path):
    store = JsonStore()
    target = tmp_path / "basic_finance.json"
    store.commit(target, {"600000": {"2014年年报": {}}})

    runner, _ = make_runner(tmp_path, payload_for, target=target)
    report = runner.run(["600000"])
    assert report.skipped == []
    assert store.load(target)["600000"] == payload_for("600000")


def test_per_entity_mode_writes_one_file_per_code(tmp_path):
    target = tmp_path / "basic_finance"
    (target).mkdir()
    (target / "600000").write_text('{"2014年年报": {}}', encoding="utf-8")

    def process(code):
        if code == "000001":
            raise FetchError("timeout", code)
        return payload_for(code)

    runner, _ = make_runner(
        tmp_path, process, target=target, commit_mode=COMMIT_PER_ENTITY, skip_existing=True
    )
    report = runner.run(["600000", "000001", "300750"])

    assert report.skipped == ["600000"]
    assert [r.code for r in report.failed] == ["000001"]
    assert JsonStore().load(target / "300750") == payload_for("300750")
    assert not (target / "000001").exists()


def test_backup_failure_is_surfaced(tmp_path, monkeypatch):
    store = JsonStore()
    target = tmp_path / "basic_finance.json"
    store.commit(target, {"600000": {}})

    def broken_backup(path):
        raise BackupError("disk full", path)

    runner, _ = make_runner(tmp_path, payload_for, target=target)
    monkeypatch.setattr(runner.store, "backup", broken_backup)

    with pytest.raises(BackupError):
        runner.run(["000001"])
    assert store.load(target) == {"600000": {}}


def test_corrupt_prior_store_is_surfaced(tmp_path):
    target = tmp_path / "basic_finance.json"
    target.write_text("{broken", encoding="utf-8")
    runner, _ = make_runner(tmp_path, payload_for, target=target)
    with pytest.raises(StoreDecodeError):
        runner.run(["600000"])


def test_progress_callback(tmp_path):
    calls = []
    runner, _ = make_runner(tmp_path, payload_for)
    runner.run(["a", "b"], progress=lambda i, n, r: calls.append((i, n, r.code, r.ok)))
    assert calls == [(1, 2, "a", True), (2, 2, "b", True)]


def test_invalid_configuration_rejected(tmp_path):
    with pytest.raises(ValueError):
        StockLoopRunner(process=payload_for, store=JsonStore(), target=tmp_path, commit_mode="bulk")
    with pytest.raises(ValueError):
        StockLoopRunner(process=payload_for, store=JsonStore(), target=tmp_path, delay_seconds=-1)


def test_per_entity_commit_failure_keeps_partial_report(tmp_path, monkeypatch):
    target = tmp_path / "basic_finance"
    seen = []

    def process(code):
        seen.append(code)
        return payload_for(code)

    runner, _ = make_runner(tmp_path, process, target=target, commit_mode=COMMIT_PER_ENTITY)
    real_commit = runner.store.commit

    def commit(path, content):
        if path.name == "000002":
            raise CommitError("read-only file system", path)
        return real_commit(path, content)

    monkeypatch.setattr(runner.store, "commit", commit)

    with pytest.raises(CommitError) as excinfo:
        runner.run(["000001", "000002", "000003"])

    report = excinfo.value.report
    assert seen == ["000001", "000002"]
    assert [r.code for r in report.succeeded] == ["000001"]
    assert [r.code for r in report.failed] == ["000002"]
    assert report.committed is False
    assert report.commit_error is excinfo.value
    assert (target / "000001").exists()
    assert not (target / "000002").exists()


def test_aggregate_commit_failure_report_not_committed(tmp_path, monkeypatch):
    runner, _ = make_runner(tmp_path, payload_for)

    def commit(path, content):
        raise CommitError("no space left on device", path)

    monkeypatch.setattr(runner.store, "commit", commit)

    with pytest.raises(CommitError) as excinfo:
        runner.run(["600000", "000001"])

    report = excinfo.value.report
    assert report.succeeded_count == 2
    assert report.committed is False
    assert isinstance(report.commit_error, CommitError)


def test_skip_existing_per_entity_retries_empty_file(tmp_path):
    target = tmp_path / "basic_finance"
    target.mkdir()
    (target / "600000").write_text("{}", encoding="utf-8")
    (target / "000001").write_text('{"2015年年报": {"revenue": "1"}}', encoding="utf-8")
    (target / "300750").write_text("{broken", encoding="utf-8")

    runner, _ = make_runner(
        tmp_path, payload_for, target=target, commit_mode=COMMIT_PER_ENTITY, skip_existing=True
    )
    report = runner.run(["600000", "000001", "300750"])

    assert report.skipped == ["000001"]
    assert [r.code for r in report.succeeded] == ["600000", "300750"]
    assert JsonStore().load(target / "600000") == payload_for("600000")
