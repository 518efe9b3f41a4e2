"""
Challenge Engine: builds the randomized challenge sequence for a session
"""
import logging
import random
from typing import Dict, List, Optional

from ..models.data_models import ChallengeDescriptor, ChallengeType, TurnDirection

logger = logging.getLogger(__name__)


# Fixed catalog of challenge kinds; instruction text is stamped here, not at render time
CHALLENGE_CATALOG: Dict[str, ChallengeDescriptor] = {
    "head_turn-left": ChallengeDescriptor(
        type=ChallengeType.HEAD_TURN,
        direction=TurnDirection.LEFT,
        instruction_text="Turn your head left",
    ),
    "head_turn-right": ChallengeDescriptor(
        type=ChallengeType.HEAD_TURN,
        direction=TurnDirection.RIGHT,
        instruction_text="Turn your head right",
    ),
    "blink": ChallengeDescriptor(
        type=ChallengeType.BLINK,
        repeat_count=2,
        instruction_text="Blink twice",
    ),
    "smile": ChallengeDescriptor(
        type=ChallengeType.SMILE,
        instruction_text="Smile at the camera",
    ),
    "head_nod": ChallengeDescriptor(
        type=ChallengeType.HEAD_NOD,
        instruction_text="Nod your head up and down",
    ),
}


class ChallengeEngine:
    """
    Generates 2-4 challenges per session, drawn without replacement.

    The two head-turn kinds share one slot: a direction is picked per session
    so a sequence never contains two turns.
    """

    MIN_CHALLENGES = 2
    MAX_EXTRA_CHALLENGES = 2

    def __init__(self, rng: Optional[random.Random] = None):
        """
        Args:
            rng: Random source. Defaults to the OS entropy pool so sequences
                 cannot be predicted from previous sessions.
        """
        self.rng = rng or random.SystemRandom()

    def session_catalog(self) -> List[ChallengeDescriptor]:
        """One descriptor per gesture family, with the turn direction chosen at random"""
        direction = self.rng.choice(["head_turn-left", "head_turn-right"])
        return [
            CHALLENGE_CATALOG[direction],
            CHALLENGE_CATALOG["blink"],
            CHALLENGE_CATALOG["smile"],
            CHALLENGE_CATALOG["head_nod"],
        ]

    def generate_sequence(self) -> List[ChallengeDescriptor]:
        """
        Produce a shuffled challenge sequence for a new session.

        Returns:
            List of 2 to 4 descriptors with no repeated gesture family
        """
        catalog = self.session_catalog()
        count = self.MIN_CHALLENGES + self.rng.randint(0, self.MAX_EXTRA_CHALLENGES)
        sequence = self.rng.sample(catalog, count)
        logger.info(f"Generated challenge sequence: {[c.kind for c in sequence]}")
        return sequence
