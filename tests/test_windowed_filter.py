import pytest

from hycore.congestion.windowed_filter import WindowedFilter, max_filter, min_filter


def estimates(f):
    return f.best(), f.second_best(), f.third_best()


@pytest.mark.parametrize(
    "comparator, a, b, expected",
    [
        (max_filter, 5, 3, 1),
        (max_filter, 3, 5, -1),
        (max_filter, 4, 4, 0),
        (min_filter, 5, 3, -1),
        (min_filter, 3, 5, 1),
        (min_filter, 4, 4, 0),
    ],
)
def test_comparators(comparator, a, b, expected):
    assert comparator(a, b) == expected


def test_first_sample_sets_all_estimates():
    f = WindowedFilter(100, max_filter)
    f.update(50, 0)
    assert estimates(f) == (50, 50, 50)


def test_new_best_replaces_everything():
    f = WindowedFilter(100, max_filter)
    f.update(50, 0)
    f.update(30, 40)
    f.update(70, 50)
    assert estimates(f) == (70, 70, 70)


def test_max_filter_window_progression():
    f = WindowedFilter(100, max_filter)
    f.update(50, 0)
    f.update(40, 10)
    assert estimates(f) == (50, 50, 50)
    f.update(30, 30)
    assert estimates(f) == (50, 30, 30)
    f.update(20, 60)
    assert estimates(f) == (50, 30, 30)
    f.update(20, 81)
    assert estimates(f) == (50, 30, 20)
    f.update(10, 101)
    assert estimates(f) == (30, 20, 10)


def test_stale_window_resets():
    f = WindowedFilter(10, max_filter)
    f.update(10, 0)
    f.update(5, 11)
    assert estimates(f) == (5, 5, 5)


def test_zero_best_is_treated_as_uninitialised():
    f = WindowedFilter(100, max_filter)
    f.update(0, 0)
    f.update(3, 1)
    assert f.best() == 3


def test_min_filter_keeps_smallest():
    f = WindowedFilter(100, min_filter)
    for t, value in enumerate([40, 30, 35, 50]):
        f.update(value, t)
    assert f.best() == 30
    f.update(20, 10)
    assert estimates(f) == (20, 20, 20)


def test_max_ordering_invariant():
    f = WindowedFilter(20, max_filter)
    samples = [5, 9, 3, 7, 2, 8, 1, 6, 4, 10, 3, 2, 7, 1, 5]
    for t, value in enumerate(samples):
        f.update(value, t * 3)
        assert f.best() >= f.second_best() >= f.third_best()


def test_clear_and_reset():
    f = WindowedFilter(100, max_filter)
    f.update(50, 0)
    f.clear()
    assert estimates(f) == (0, 0, 0)
    f.reset(12, 5)
    assert estimates(f) == (12, 12, 12)


def test_custom_zero_value():
    f = WindowedFilter(100, lambda a, b: max_filter(a[0], b[0]), zero=(0, "none"))
    f.clear()
    assert f.best() == (0, "none")
    f.update((4, "x"), 1)
    assert f.best() == (4, "x")


def test_set_window_length_changes_expiry():
    f = WindowedFilter(100, max_filter)
    f.update(10, 0)
    f.set_window_length(5)
    f.update(5, 6)
    assert estimates(f) == (5, 5, 5)