import pytest

from slotrack.recommendations import PerformanceItem, badge_type_for, level_stats, mastery_badges, recommend


def item(oid, pct):
	return PerformanceItem(outcome_id=oid, outcome_name=f"SLO {oid}", subject_name="Science", percentage=pct)


@pytest.mark.parametrize(
	"pct, badge",
	[(100, "gold"), (95, "gold"), (94.9, "silver"), (90, "silver"), (85, "bronze"), (84.99, None)],
)
def test_badge_thresholds(pct, badge):
	assert badge_type_for(pct) == badge


def test_weakest_outcomes_come_first():
	recs = recommend([item("a", 90), item("b", 30), item("c", 70), item("d", 10)])
	assert [r.outcome_id for r in recs] == ["b", "d", "c", "a"]
	assert [r.content_type for r in recs] == ["foundational", "foundational", "reinforcement", "challenge"]
	assert recs[0].mastery_level.value == "developmental"
	assert recs[0].activities


def test_badges_only_for_mastered_outcomes():
	badges = mastery_badges([item("a", 96), item("b", 85), item("c", 60)])
	assert [(b.outcome_id, b.badge_type) for b in badges] == [("a", "gold"), ("b", "bronze")]


def test_level_stats():
	stats = level_stats([item("a", 90), item("b", 61), item("c", 20)])
	assert stats == {"mastery": 1, "satisfactory": 1, "developmental": 1, "average_score": 57}
	assert level_stats([]) == {"mastery": 0, "satisfactory": 0, "developmental": 0, "average_score": 0}
