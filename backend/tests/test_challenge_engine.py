"""
Unit and property-based tests for ChallengeEngine
"""
import random

import pytest
from hypothesis import given, settings, strategies as st

from liveness.models.data_models import ChallengeType, TurnDirection
from liveness.services.challenge_engine import CHALLENGE_CATALOG, ChallengeEngine


class TestChallengeEngine:
    """Test suite for ChallengeEngine class"""

    def setup_method(self):
        self.engine = ChallengeEngine(rng=random.Random(42))

    def test_catalog_has_five_kinds(self):
        assert set(CHALLENGE_CATALOG) == {
            "head_turn-left", "head_turn-right", "blink", "smile", "head_nod"
        }

    def test_instruction_text_is_stamped(self):
        """Instructions come from the catalog, not the renderer"""
        assert CHALLENGE_CATALOG["blink"].instruction_text == "Blink twice"
        assert CHALLENGE_CATALOG["blink"].repeat_count == 2
        assert CHALLENGE_CATALOG["head_turn-left"].direction == TurnDirection.LEFT

    def test_session_catalog_has_single_turn(self):
        catalog = self.engine.session_catalog()
        turns = [c for c in catalog if c.type == ChallengeType.HEAD_TURN]
        assert len(catalog) == 4
        assert len(turns) == 1

    def test_sequence_bounds(self):
        for _ in range(50):
            sequence = self.engine.generate_sequence()
            assert 2 <= len(sequence) <= 4

    def test_sequences_vary_between_sessions(self):
        seen = {tuple(c.kind for c in self.engine.generate_sequence()) for _ in range(50)}
        assert len(seen) > 1

    def test_default_rng_is_system_random(self):
        assert isinstance(ChallengeEngine().rng, random.SystemRandom)

    def test_descriptor_serialization(self):
        descriptor = CHALLENGE_CATALOG["head_turn-right"]
        assert descriptor.kind == "head_turn-right"
        assert descriptor.to_dict() == {
            "type": "head_turn",
            "instruction": "Turn your head right",
            "direction": "right",
            "count": None,
        }
        assert CHALLENGE_CATALOG["blink"].to_dict()["direction"] is None
        assert CHALLENGE_CATALOG["blink"].to_dict()["count"] == 2

    @given(seed=st.integers(min_value=0, max_value=2**32 - 1))
    @settings(max_examples=200)
    @pytest.mark.property_test
    def test_property_sequence_length_and_families(self, seed):
        """
        For every generated sequence: length in [2, 4] and no gesture family
        repeats, so in particular no two adjacent entries share one.
        """
        sequence = ChallengeEngine(rng=random.Random(seed)).generate_sequence()

        assert 2 <= len(sequence) <= 4
        families = [c.family for c in sequence]
        assert len(set(families)) == len(families)
        for previous, current in zip(families, families[1:]):
            assert previous != current
