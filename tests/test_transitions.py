from insights_engine.scoring.constants import (
    CLUSTER_HEALTH_SCALE, LIFECYCLE_SCALE, ClusterHealthLevel, LifecycleStage,
)
from insights_engine.scoring.result import ScoreResult
from insights_engine.scoring.transitions import OrdinalScale, detect

LIFECYCLE = OrdinalScale(LIFECYCLE_SCALE)
CLUSTER = OrdinalScale(CLUSTER_HEALTH_SCALE)


class TestDetect:
    def test_worsening_is_concerning(self):
        t = detect("engaged", "at_risk", LIFECYCLE)
        assert t.is_transition
        assert t.is_concerning
        assert (t.previous, t.current) == ("engaged", "at_risk")

    def test_improvement_is_not_concerning(self):
        t = detect(LifecycleStage.AT_RISK, LifecycleStage.ENGAGED, LIFECYCLE)
        assert t.is_transition
        assert not t.is_concerning

    def test_same_state_is_no_transition(self):
        t = detect("growing", "growing", LIFECYCLE)
        assert not t.is_transition
        assert not t.is_concerning

    def test_first_assessment_is_never_concerning(self):
        t = detect(None, "dormant", LIFECYCLE)
        assert t.is_transition
        assert not t.is_concerning

    def test_unknown_state_is_never_concerning(self):
        t = detect("legacy_stage", "dormant", LIFECYCLE)
        assert t.is_transition
        assert not t.is_concerning

    def test_accepts_score_result(self):
        t = detect(ClusterHealthLevel.HEALTHY, ScoreResult(score=40, level="struggling"), CLUSTER)
        assert t.is_concerning
        assert t.current == "struggling"


class TestOrdinalScale:
    def test_rank_best_first(self):
        assert CLUSTER.rank("thriving") == 0
        assert CLUSTER.rank(ClusterHealthLevel.CRITICAL) == len(CLUSTER_HEALTH_SCALE) - 1
        assert CLUSTER.rank("nope") is None

    def test_membership(self):
        assert "stable" in CLUSTER
        assert "dormant" not in CLUSTER
