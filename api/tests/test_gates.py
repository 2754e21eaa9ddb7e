from datetime import date

from fakes import make_ctx
from matchscore.services.contexts import PreferencesContext, TIER_A, TIER_B
from matchscore.services.gates import (
    OUTSIDE,
    UNKNOWN,
    UNSTATED,
    WITHIN,
    PREFERENCE_CLASSIFIERS,
    age_gate,
    classify_distance,
    default_hard_gates,
    first_exclusion,
    gender_gate,
    parse_preferred_genders,
    resolve_tier,
)


def _compliance(ctx):
    return {c.key: c.classify(ctx) for c in PREFERENCE_CLASSIFIERS}


def test_parse_preferred_genders_normalises_and_rejects_garbage():
    assert parse_preferred_genders([" Female ", "MALE"]) == frozenset({"female", "male"})
    assert parse_preferred_genders([]) is None
    assert parse_preferred_genders("female") is None
    assert parse_preferred_genders(None) is None
    assert parse_preferred_genders([1, None, " "]) is None


def test_gender_gate_is_case_insensitive():
    prefs = PreferencesContext(preferred_genders=frozenset({"female"}))
    assert gender_gate(make_ctx(prefs=prefs, gender="FEMALE")) is None
    assert gender_gate(make_ctx(prefs=prefs, gender="male")) == "gender"
    assert gender_gate(make_ctx(prefs=prefs, gender=None)) == "gender"
    assert gender_gate(make_ctx(gender=None)) is None


def test_age_gate_reasons():
    prefs = PreferencesContext(preferred_age_min=25, preferred_age_max=35)
    # NOW is 2026-03-01
    assert age_gate(make_ctx(prefs=prefs, birthdate=date(1996, 1, 1))) is None
    assert age_gate(make_ctx(prefs=prefs, birthdate=date(2005, 1, 1))) == "age_min"
    assert age_gate(make_ctx(prefs=prefs, birthdate=date(1980, 1, 1))) == "age_max"
    assert age_gate(make_ctx(prefs=prefs, birthdate=None)) == "age_missing"
    assert age_gate(make_ctx(birthdate=None)) is None


def test_unknown_distance_never_excludes_but_drops_to_tier_b():
    prefs = PreferencesContext(preferred_distance_km=50)
    ctx = make_ctx(prefs=prefs, distance_km=None)
    assert first_exclusion(ctx, default_hard_gates()) is None
    assert classify_distance(ctx) == UNKNOWN
    assert resolve_tier(ctx, _compliance(ctx)) == TIER_B


def test_distance_beyond_preference_is_excluded_unless_expanded():
    prefs = PreferencesContext(preferred_distance_km=50)
    ctx = make_ctx(prefs=prefs, distance_km=100)
    assert first_exclusion(ctx, default_hard_gates()) == "distance"
    assert first_exclusion(ctx, default_hard_gates(expand_distance=True)) is None
    assert classify_distance(ctx) == OUTSIDE
    assert resolve_tier(ctx, _compliance(ctx)) == TIER_B


def test_gates_short_circuit_in_order():
    prefs = PreferencesContext(preferred_genders=frozenset({"male"}), preferred_age_min=30, preferred_distance_km=5)
    ctx = make_ctx(prefs=prefs, gender="female", birthdate=date(2010, 1, 1), distance_km=500)
    assert first_exclusion(ctx, default_hard_gates()) == "gender"


def test_tier_a_needs_a_stated_preference_fully_satisfied():
    no_prefs = make_ctx(distance_km=3)
    assert resolve_tier(no_prefs, _compliance(no_prefs)) == TIER_B

    prefs = PreferencesContext(preferred_genders=frozenset({"female"}), preferred_distance_km=50)
    within = make_ctx(prefs=prefs, gender="female", distance_km=10)
    compliance = _compliance(within)
    assert compliance == {"gender": WITHIN, "age": UNSTATED, "distance": WITHIN}
    assert resolve_tier(within, compliance) == TIER_A
