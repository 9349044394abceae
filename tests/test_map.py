from dataclasses import dataclass

from covismap.map import Map


@dataclass(eq=False)
class FakeKeyFrame:
    id: int


@dataclass(eq=False)
class FakePoint:
    name: str


def test_add_keyframes_tracks_count_and_max_id():
    m = Map()
    kfs = [FakeKeyFrame(3), FakeKeyFrame(7), FakeKeyFrame(5)]
    for kf in kfs:
        m.add_keyframe(kf)
    assert m.keyframes_in_map() == 3
    assert m.max_keyframe_id() == 7
    assert m.all_keyframes() == kfs


def test_adding_same_keyframe_twice_counts_once():
    m = Map()
    kf = FakeKeyFrame(1)
    m.add_keyframe(kf)
    m.add_keyframe(kf)
    assert m.keyframes_in_map() == 1


def test_erase_keyframe_keeps_max_id():
    m = Map()
    a, b = FakeKeyFrame(1), FakeKeyFrame(4)
    m.add_keyframe(a)
    m.add_keyframe(b)
    m.erase_keyframe(b)
    assert m.all_keyframes() == [a]
    assert m.max_keyframe_id() == 4


def test_map_points_add_and_erase():
    m = Map()
    p, q = FakePoint("p"), FakePoint("q")
    m.add_map_point(p)
    m.add_map_point(q)
    assert m.map_points_in_map() == 2
    m.erase_map_point(p)
    assert m.all_map_points() == [q]


def test_erasing_unknown_entries_changes_nothing():
    m = Map()
    p = FakePoint("p")
    m.add_map_point(p)
    m.erase_map_point(FakePoint("other"))
    m.erase_keyframe(FakeKeyFrame(2))
    assert m.all_map_points() == [p]
    assert m.keyframes_in_map() == 0


def test_reference_points_are_copied():
    m = Map()
    refs = [FakePoint("a"), FakePoint("b")]
    m.set_reference_map_points(refs)
    refs.append(FakePoint("c"))
    assert len(m.reference_map_points()) == 2
    returned = m.reference_map_points()
    returned.clear()
    assert len(m.reference_map_points()) == 2


def test_clear_resets_everything():
    m = Map()
    m.add_keyframe(FakeKeyFrame(9))
    m.add_map_point(FakePoint("p"))
    m.set_reference_map_points([FakePoint("r")])
    m.keyframe_origins.append(FakeKeyFrame(0))
    m.clear()
    assert m.keyframes_in_map() == 0
    assert m.map_points_in_map() == 0
    assert m.max_keyframe_id() == 0
    assert m.reference_map_points() == []
    assert m.keyframe_origins == []


def test_new_map_is_empty():
    m = Map()
    assert m.all_keyframes() == []
    assert m.all_map_points() == []
    assert m.max_keyframe_id() == 0