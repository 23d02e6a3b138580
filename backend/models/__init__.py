from models.content import GoalRecord, LearningObjectRecord, ObjectRelationRecord
from models.learner import (
    AbilityProfileRecord, MasteryStateRecord,
    UsageEventRecord, UsageSpaceRecordRow,
)

__all__ = [
    "GoalRecord", "LearningObjectRecord", "ObjectRelationRecord",
    "AbilityProfileRecord", "MasteryStateRecord",
    "UsageEventRecord", "UsageSpaceRecordRow",
]
