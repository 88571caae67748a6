from .learners import LearnerProfile, LearnerRepository, learners
from .subject_state import SubjectState, SubjectStateRepository, subject_states

__all__ = [
    "LearnerProfile",
    "LearnerRepository",
    "SubjectState",
    "SubjectStateRepository",
    "learners",
    "subject_states",
]
