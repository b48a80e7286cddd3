from detector import Crossing, detect_crossing, is_alert_worthy


def alerts_for(sequence, threshold=2.0):
    """Feed successive GPAs through the detector, as the stored GPA would"""
    fired = []
    previous = None
    for gpa in sequence:
        if is_alert_worthy(previous, gpa, threshold):
            fired.append(gpa)
        previous = gpa
    return fired


def test_downward_crossing_fires():
    assert detect_crossing(2.1, 1.8) is Crossing.DOWNWARD
    assert is_alert_worthy(2.1, 1.8)


def test_exactly_at_threshold_is_not_below():
    assert not is_alert_worthy(2.5, 2.0)
    assert is_alert_worthy(2.0, 1.99)


def test_no_prior_gpa_counts_as_four():
    assert detect_crossing(None, 3.1) is Crossing.NONE
    assert detect_crossing(None, 2.0) is Crossing.NONE
    assert detect_crossing(None, 0.5) is Crossing.DOWNWARD


def test_no_counted_credits_is_never_a_crossing():
    assert detect_crossing(None, None) is Crossing.NONE
    assert detect_crossing(2.5, None) is Crossing.NONE


def test_staying_below_does_not_refire():
    assert not is_alert_worthy(1.8, 1.7)
    assert not is_alert_worthy(1.7, 1.7)


def test_recovery_crossing():
    assert detect_crossing(1.7, 2.3) is Crossing.RECOVERY
    assert detect_crossing(1.9, 2.0) is Crossing.RECOVERY
    assert detect_crossing(3.0, 2.5) is Crossing.NONE


def test_fires_once_per_drop_and_rearms_after_recovery():
    assert alerts_for([2.1, 1.8, 1.7, 1.7, 1.6]) == [1.8]
    assert alerts_for([2.1, 1.8, 1.7, 2.3, 1.9]) == [1.8, 1.9]


def test_custom_threshold():
    assert is_alert_worthy(3.0, 2.9, threshold=3.0)
    assert not is_alert_worthy(2.1, 1.8, threshold=1.5)
