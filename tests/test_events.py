from pathlib import Path

import pytest

from watchrun.events import Op, WatchEvent, op_name


class TestOp:
    def test_all_is_union_of_members(self):
        assert Op.ALL == Op.CREATE | Op.WRITE | Op.REMOVE | Op.RENAME | Op.CHMOD

    def test_from_names(self):
        assert Op.from_names(["create", "WRITE"]) == Op.CREATE | Op.WRITE
        assert Op.from_names(["all"]) == Op.ALL
        assert Op.from_names(["", " remove "]) == Op.REMOVE

    def test_from_names_rejects_unknown(self):
        with pytest.raises(ValueError, match="invalid event: modify"):
            Op.from_names(["modify"])

    def test_op_name_order(self):
        assert op_name(Op.WRITE | Op.CREATE) == "CREATE|WRITE"
        assert op_name(Op.CHMOD) == "CHMOD"
        assert op_name(Op(0)) == ""


def test_watch_event_is_immutable():
    event = WatchEvent(path=Path("/tmp/a.txt"), op=Op.WRITE)
    assert event.has(Op.WRITE | Op.CHMOD)
    assert not event.has(Op.REMOVE)
    assert str(event) == "WRITE /tmp/a.txt"
    with pytest.raises(AttributeError):
        event.op = Op.CREATE  # type: ignore[misc]
