import json

from permalink_resolver.status import RunState, StatusPublisher, read_status_file


def test_evolve_is_a_copy_with_tuples():
    base = RunState()
    nxt = base.evolve(phase="polling", active_links=["a", "b"])
    assert base.phase == "idle"
    assert nxt.phase == "polling"
    assert nxt.active_links == ("a", "b")
    assert not nxt.is_terminal
    assert nxt.evolve(phase="done").is_terminal


def test_dict_round_trip_ignores_unknown_keys():
    state = RunState(phase="done", completed=3, resolved_links=("x",))
    data = state.to_dict()
    data["extra"] = "ignored"
    assert RunState.from_dict(data) == state


def test_subscriber_gets_latest_immediately():
    pub = StatusPublisher()
    pub.publish(RunState(phase="waiting"))
    q = pub.subscribe()
    assert q.get_nowait().phase == "waiting"
    assert pub.subscriber_count == 1
    pub.unsubscribe(q)
    pub.unsubscribe(q)
    assert pub.subscriber_count == 0


def test_full_subscriber_drops_oldest():
    pub = StatusPublisher(subscriber_capacity=2)
    q = pub.subscribe()  # holds the initial idle snapshot
    for msg in ("one", "two", "three"):
        pub.publish(RunState(message=msg))
    assert [q.get_nowait().message for _ in range(2)] == ["two", "three"]


def test_persisted_snapshot_can_be_read_back(tmp_path):
    path = str(tmp_path / "status.json")
    pub = StatusPublisher(path)
    pub.publish(RunState(phase="polling", total=4, active_links=("a",)))

    with open(path, encoding="utf-8") as f:
        assert json.load(f)["phase"] == "polling"
    restored = read_status_file(path)
    assert restored.total == 4
    assert restored.active_links == ("a",)


def test_publish_never_raises_on_unwritable_path(tmp_path):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("x")
    pub = StatusPublisher(str(blocker / "status.json"))
    pub.publish(RunState(phase="error"))
    assert pub.latest().phase == "error"


def test_read_status_file_missing_or_corrupt(tmp_path):
    assert read_status_file(str(tmp_path / "missing.json")) is None
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    assert read_status_file(str(bad)) is None
