from __future__ import annotations
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from .proficiency import MASTERY_THRESHOLD, MasteryLevel, classify

CONTENT_DETAILS: Dict[str, Dict[str, object]] = {
	"challenge": {
		"label": "Challenge Mode",
		"description": "Push your limits with advanced content",
		"estimated_time": "20-30 min",
		"activities": ["Advanced worksheets", "Critical thinking tasks", "Peer-teaching exercises", "Complex problem solving"],
		"priority": 1,
	},
	"reinforcement": {
		"label": "Reinforcement",
		"description": "Strengthen your understanding",
		"estimated_time": "15-20 min",
		"activities": ["Standard practice tests", "Mid-level exercises", "Review quizzes", "Application problems"],
		"priority": 2,
	},
	"foundational": {
		"label": "Back to Basics",
		"description": "Build a strong foundation",
		"estimated_time": "25-35 min",
		"activities": ["Video tutorials", "Step-by-step worksheets", "Flashcard practice", "Guided examples"],
		"priority": 3,
	},
}


class PerformanceItem(BaseModel):
	outcome_id: str
	outcome_name: str
	subject_name: str
	percentage: float
	last_updated: Optional[str] = None


class Recommendation(BaseModel):
	outcome_id: str
	outcome_name: str
	subject_name: str
	mastery_percentage: float
	mastery_level: MasteryLevel
	content_type: str
	content_label: str
	description: str
	estimated_time: str
	activities: List[str]
	priority: int


class MasteryBadge(BaseModel):
	outcome_id: str
	outcome_name: str
	achieved_at: Optional[str] = None
	badge_type: str


def content_type_for(percentage: float) -> str:
	level = classify(percentage)
	if level is MasteryLevel.mastery:
		return "challenge"
	if level is MasteryLevel.satisfactory:
		return "reinforcement"
	return "foundational"


def recommend(items: Iterable[PerformanceItem]) -> List[Recommendation]:
	recs = []
	for item in items:
		content_type = content_type_for(item.percentage)
		details = CONTENT_DETAILS[content_type]
		recs.append(
			Recommendation(
				outcome_id=item.outcome_id,
				outcome_name=item.outcome_name,
				subject_name=item.subject_name,
				mastery_percentage=item.percentage,
				mastery_level=classify(item.percentage),
				content_type=content_type,
				content_label=details["label"],
				description=details["description"],
				estimated_time=details["estimated_time"],
				activities=list(details["activities"]),
				priority=details["priority"],
			)
		)
	# stable: equal priorities keep input order
	recs.sort(key=lambda r: r.priority, reverse=True)
	return recs


def badge_type_for(percentage: float) -> Optional[str]:
	if percentage < MASTERY_THRESHOLD:
		return None
	if percentage >= 95:
		return "gold"
	if percentage >= 90:
		return "silver"
	return "bronze"


def mastery_badges(items: Iterable[PerformanceItem]) -> List[MasteryBadge]:
	badges = []
	for item in items:
		badge = badge_type_for(item.percentage)
		if badge is not None:
			badges.append(MasteryBadge(outcome_id=item.outcome_id, outcome_name=item.outcome_name, achieved_at=item.last_updated, badge_type=badge))
	return badges


def level_stats(items: Iterable[PerformanceItem]) -> Dict[str, int]:
	items = list(items)
	stats = {level.value: 0 for level in MasteryLevel}
	for item in items:
		stats[classify(item.percentage).value] += 1
	stats["average_score"] = round(sum(i.percentage for i in items) / len(items)) if items else 0
	return stats

