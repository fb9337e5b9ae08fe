import random

import pytest

from poster import (
    CanvasSpec,
    Cursor,
    PlacementSlot,
    RunConfig,
    allocate,
    band_height_for,
    plan_slots,
    scaled_width,
    should_stop,
)


def _random_sizes(n, seed=7):
    rng = random.Random(seed)
    return [(rng.randint(50, 900), rng.randint(50, 900)) for _ in range(n)]


def _overlaps(a: PlacementSlot, b: PlacementSlot) -> bool:
    return not (a.right <= b.x or b.right <= a.x or a.bottom <= b.y or b.bottom <= a.y)


def test_three_image_scenario():
    canvas = CanvasSpec(1000, 1000)
    cursor = Cursor()
    slots = []
    for size in [(400, 200), (400, 400), (300, 100)]:
        slot, cursor, more = allocate(cursor, size, 120, canvas, 10)
        assert more
        slots.append(slot)

    assert slots == [
        PlacementSlot(0, 0, 240, 120),
        PlacementSlot(250, 0, 120, 120),
        PlacementSlot(380, 0, 360, 120),
    ]
    assert cursor == Cursor(x=750, y=0, row=0)


def test_row_wrap_overshoots_then_staggers():
    canvas = CanvasSpec(500, 1000)
    slots = plan_slots([(10, 10)] * 13, canvas, band_h=100, gap=10)

    # the wrap test uses the pre-advance x against the full width, so the
    # sixth image lands at x=550, past the right edge
    assert [s.x for s in slots[:6]] == [0, 110, 220, 330, 440, 550]
    assert all(s.y == 0 for s in slots[:6])

    # odd row starts half a band to the left
    assert [s.x for s in slots[6:12]] == [-50, 60, 170, 280, 390, 500]
    assert all(s.y == 110 for s in slots[6:12])

    # even row starts flush again
    assert (slots[12].x, slots[12].y) == (0, 220)


def test_layout_is_monotonic():
    canvas = CanvasSpec(1600, 900)
    slots = plan_slots(_random_sizes(300), canvas, band_h=80, gap=10)
    assert len(slots) > 20

    for prev, cur in zip(slots, slots[1:]):
        assert cur.y >= prev.y
        if cur.y == prev.y:
            assert cur.x > prev.x


def test_layout_is_deterministic():
    canvas = CanvasSpec(1600, 900)
    sizes = _random_sizes(120)
    assert plan_slots(sizes, canvas, 80, 10) == plan_slots(list(sizes), canvas, 80, 10)


def test_slots_never_overlap():
    canvas = CanvasSpec(1200, 700)
    slots = plan_slots(_random_sizes(200, seed=3), canvas, band_h=60, gap=4)
    for i, a in enumerate(slots):
        for b in slots[i + 1:]:
            assert not _overlaps(a, b), (a, b)


def test_fill_stop_bounds_slot_origins():
    canvas = CanvasSpec(300, 300)
    slots = plan_slots([(10, 10)] * 100, canvas, band_h=100, gap=10)

    assert slots
    assert max(s.y for s in slots) == 220
    assert all(s.y <= canvas.height for s in slots)
    # bottom edges may run past the canvas; compositing clips them
    assert any(s.bottom > canvas.height for s in slots)


def test_allocate_stops_without_moving_cursor():
    canvas = CanvasSpec(300, 300)
    cursor = Cursor(x=40, y=301, row=3)
    slot, nxt, more = allocate(cursor, (10, 10), 100, canvas, 10)
    assert slot is None
    assert nxt == cursor
    assert more is False


@pytest.mark.parametrize(
    "height,band_h",
    [(0, 100), (50, 120), (300, 0), (300, -5)],
)
def test_canvas_without_room_for_a_band_stops_immediately(height, band_h):
    canvas = CanvasSpec(400, height)
    assert should_stop(Cursor(), canvas, band_h)
    assert plan_slots([(10, 10)] * 5, canvas, band_h, 10) == []


def test_should_stop_only_after_y_exceeds_height():
    canvas = CanvasSpec(400, 300)
    assert not should_stop(Cursor(y=300), canvas, 100)
    assert should_stop(Cursor(y=301), canvas, 100)


def test_scaled_width_rounds_half_up():
    assert scaled_width((3, 2), 101) == 152
    assert scaled_width((1, 1000), 10) == 1
    with pytest.raises(ValueError):
        scaled_width((0, 10), 100)


def test_band_height_per_mode():
    assert RunConfig(mode="realtime").band_h == (2160 - 9 * 10) // 10
    assert RunConfig(mode="batch").band_h == (2160 - 5 * 10) // 6
    # realtime keeps a floor for small canvases
    assert band_height_for(500, 10, rows=10, min_band=100) == 100
    assert RunConfig(band_height=64).band_h == 64


def test_unknown_mode_rejected():
    with pytest.raises(ValueError):
        RunConfig(mode="slideshow").band_h


def test_negative_gap_rejected():
    with pytest.raises(ValueError):
        allocate(Cursor(), (10, 10), 100, CanvasSpec(500, 500), -20)
    with pytest.raises(ValueError):
        RunConfig(gap=-1)
