from dataclasses import dataclass
from typing import List, Optional, Tuple
from openskill.models import PlackettLuce

from config import Config


class RatingComputationFailed(Exception):
    """Stat based adjustment could not be computed"""
    pass


@dataclass
class PlayerSkill:
    player_id: str
    mu: float
    sigma: float
    elo: int


@dataclass
class RatingUpdate:
    player_id: str
    won: bool
    elo_before: int
    base_delta: int
    mu_before: float
    sigma_before: float
    mu_after: float
    sigma_after: float

    @property
    def elo_after(self) -> int:
        return self.elo_before + self.base_delta


class RatingEngine:
    """Two-team OpenSkill (Plackett-Luce) update with an integer display rating.

    Skill lives in (mu, sigma). The display rating moves by the change in mu
    scaled to display units, at least one point when mu moved at all, capped
    at max_delta and kept within [floor, ceiling].
    """

    def __init__(
        self,
        display_offset: float = Config.RATING_DISPLAY_OFFSET,
        display_scale: float = Config.RATING_DISPLAY_SCALE,
        max_delta: int = Config.RATING_MAX_DELTA,
        floor: int = Config.RATING_FLOOR,
        ceiling: int = Config.RATING_CEILING,
        default_sigma: float = Config.RATING_DEFAULT_SIGMA,
        min_sigma: float = Config.RATING_MIN_SIGMA,
    ):
        self.display_offset = display_offset
        self.display_scale = display_scale
        self.max_delta = max_delta
        self.floor = floor
        self.ceiling = ceiling
        self.default_sigma = default_sigma
        self.min_sigma = min_sigma
        self.model = PlackettLuce()

    def seed_skill(self, elo: int, match_count: int = 0) -> Tuple[float, float]:
        """Initial (mu, sigma) for a display rating; sigma shrinks with experience"""
        mu = (elo - self.display_offset) / self.display_scale
        sigma = max(self.min_sigma, self.default_sigma - min(match_count * 0.2, 6.33))
        return mu, sigma

    def clamp(self, elo: int) -> int:
        return max(self.floor, min(self.ceiling, elo))

    def display_delta(self, mu_before: float, mu_after: float) -> int:
        raw = (mu_after - mu_before) * self.display_scale
        delta = round(raw)
        if delta == 0 and mu_after != mu_before:
            delta = 1 if raw > 0 else -1
        return max(-self.max_delta, min(self.max_delta, delta))

    def bounded_delta(self, elo_before: int, delta: int) -> int:
        """Delta actually applied once the result is clamped to the rating range"""
        return self.clamp(elo_before + delta) - elo_before

    def rate(
        self,
        team1: List[PlayerSkill],
        team2: List[PlayerSkill],
        team1_won: bool,
    ) -> List[RatingUpdate]:
        if not team1 or not team2:
            raise ValueError("Both teams need at least one player to be rated")

        teams = [
            [self.model.rating(mu=p.mu, sigma=p.sigma, name=p.player_id) for p in team]
            for team in (team1, team2)
        ]
        ranks = [1, 2] if team1_won else [2, 1]
        rated = self.model.rate(teams, ranks=ranks)

        updates = []
        for won, players, new_ratings in ((team1_won, team1, rated[0]), (not team1_won, team2, rated[1])):
            for player, new in zip(players, new_ratings):
                delta = self.display_delta(player.mu, new.mu)
                updates.append(RatingUpdate(
                    player_id=player.player_id,
                    won=won,
                    elo_before=player.elo,
                    base_delta=self.bounded_delta(player.elo, delta),
                    mu_before=player.mu,
                    sigma_before=player.sigma,
                    mu_after=new.mu,
                    sigma_after=new.sigma,
                ))
        return updates

    def apply_adjustment(self, update: RatingUpdate, adjustment: Optional[int]) -> int:
        """Final display rating after a stat adjustment, kept within range"""
        return self.clamp(update.elo_before + update.base_delta + (adjustment or 0))
