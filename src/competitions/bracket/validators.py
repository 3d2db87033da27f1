# competitions/bracket/validators.py
from typing import List, Optional, Sequence

from matches.models import MatchFormat


class GenerationError(Exception):
    """Base exception for bracket generation errors"""
    pass


class InsufficientParticipants(GenerationError):
    """Fewer than two participants were supplied"""
    pass


class InvalidMapPool(GenerationError):
    """Map pool cannot support the requested match format"""
    pass


class BracketValidator:
    """Validates bracket inputs before anything is generated"""

    @staticmethod
    def validate_participants(participant_ids: Sequence, minimum: int = 2):
        if len(participant_ids) < minimum:
            raise InsufficientParticipants(
                f"Need at least {minimum} participants, got {len(participant_ids)}"
            )
        if len(set(participant_ids)) != len(participant_ids):
            raise GenerationError("Duplicate participants in roster")

    @staticmethod
    def validate_map_pool(maps: List[str], match_format: MatchFormat):
        if len(set(maps)) != len(maps):
            raise InvalidMapPool("Map pool contains duplicate maps")
        required = MatchFormat(match_format).num_maps
        if len(maps) < required:
            raise InvalidMapPool(
                f"{match_format} needs at least {required} maps, pool has {len(maps)}"
            )

    @staticmethod
    def validate_swiss_rounds(swiss_rounds: Optional[int], num_participants: int):
        if swiss_rounds is None:
            return
        if swiss_rounds < 1:
            raise GenerationError("Swiss tournaments need at least one round")
        if swiss_rounds > num_participants:
            raise GenerationError(
                f"{num_participants} participants cannot play {swiss_rounds} swiss rounds"
            )
