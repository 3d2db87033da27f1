# competitions/bracket/strategies.py
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import random
import logging

from competitions.models.tournaments import SeedingMethod, TournamentType
from matches.models import MatchBracket, MatchFormat
from .validators import BracketValidator, GenerationError

LOG = logging.getLogger(__name__)

GRAND_FINAL_SLUG = "gf"
GRAND_FINAL_RESET_SLUG = "gf-reset"


@dataclass
class Entrant:
    id: Any
    name: str
    seed: int
    rating: float = 0.0


@dataclass
class MatchSkeleton:
    """A match to be persisted; pointers refer to other skeletons by slug"""
    slug: str
    round: int
    match_number: int
    bracket: MatchBracket = MatchBracket.MAIN
    team1_id: Any = None
    team2_id: Any = None
    next_match_slug: Optional[str] = None
    next_match_slot: Optional[int] = None
    loser_next_match_slug: Optional[str] = None
    loser_next_match_slot: Optional[int] = None
    # Byes are stored already decided
    is_bye: bool = False
    winner_id: Any = None


@dataclass
class MatchRecord:
    """Persisted match as seen by a strategy when advancing"""
    slug: str
    round: int
    bracket: MatchBracket
    team1_id: Any
    team2_id: Any
    winner_id: Any
    completed: bool
    is_bye: bool = False
    next_match_slug: Optional[str] = None
    next_match_slot: Optional[int] = None
    loser_next_match_slug: Optional[str] = None
    loser_next_match_slot: Optional[int] = None

    @property
    def loser_id(self) -> Any:
        if not self.completed or self.is_bye or self.winner_id is None:
            return None
        return self.team2_id if self.winner_id == self.team1_id else self.team1_id


@dataclass
class Placement:
    match_slug: str
    slot: int
    team_id: Any


@dataclass
class BracketPlan:
    matches: List[MatchSkeleton]
    total_rounds: int

    def by_slug(self) -> Dict[str, MatchSkeleton]:
        return {m.slug: m for m in self.matches}


@dataclass
class Advancement:
    placements: List[Placement] = field(default_factory=list)
    new_matches: List[MatchSkeleton] = field(default_factory=list)
    tournament_complete: bool = False


@dataclass
class BracketOptions:
    seeding_method: SeedingMethod = SeedingMethod.SEEDED
    random_seed: Optional[int] = None
    swiss_rounds: Optional[int] = None


def seed_order(size: int) -> List[int]:
    """Standard bracket positions: 1 meets the lowest seed, top seeds meet last"""
    order = [1, 2]
    while len(order) < size:
        total = len(order) * 2 + 1
        order = [s for seed in order for s in (seed, total - seed)]
    return order[:size]


class BracketStrategy(ABC):
    """Abstract base class for bracket generation strategies"""

    @abstractmethod
    def generate(
        self,
        entrants: List[Entrant],
        match_format: MatchFormat,
        maps: List[str],
        options: Optional[BracketOptions] = None
    ) -> BracketPlan:
        """Build the initial set of matches"""
        pass

    @abstractmethod
    def advance(
        self,
        entrants: List[Entrant],
        matches: List[MatchRecord],
        completed: MatchRecord,
        options: Optional[BracketOptions] = None
    ) -> Advancement:
        """Work out what follows from a completed match"""
        pass

    def _validate(self, entrants: List[Entrant], match_format: MatchFormat, maps: List[str]):
        BracketValidator.validate_participants([e.id for e in entrants])
        BracketValidator.validate_map_pool(maps, match_format)

    def _seeded(self, entrants: List[Entrant], options: BracketOptions) -> List[Entrant]:
        ordered = sorted(entrants, key=lambda e: e.seed)
        if options.seeding_method == SeedingMethod.RANDOM:
            random.Random(options.random_seed).shuffle(ordered)
        return ordered


@dataclass(eq=False)
class _Node:
    """Match position in the full power-of-two graph, before byes are collapsed"""
    bracket: MatchBracket
    round: int
    index: int
    sources: List[Optional[Tuple[str, Any]]]
    inputs: List[Tuple[str, Any]] = field(default_factory=list)
    winner_out: Optional[Tuple[str, Any]] = None
    loser_out: Optional[Tuple[str, Any]] = None
    slug: Optional[str] = None

    @property
    def playable(self) -> bool:
        return len(self.inputs) == 2


def _resolve(source: Optional[Tuple[str, Any]]) -> Optional[Tuple[str, Any]]:
    if source is None:
        return None
    kind, ref = source
    if kind == "entrant":
        return source
    if kind == "winner":
        return ref.winner_out
    return ref.loser_out


def _slug_for(bracket: MatchBracket, round_number: int, match_number: int) -> str:
    if bracket == MatchBracket.GRAND_FINAL:
        return GRAND_FINAL_SLUG
    if bracket == MatchBracket.LOSERS:
        return f"lb-r{round_number}m{match_number}"
    return f"r{round_number}m{match_number}"


class EliminationStrategy(BracketStrategy):
    """Shared graph building for knockout brackets"""

    winners_bracket = MatchBracket.MAIN

    def _winners_rounds(self, seeded: List[Entrant]) -> List[List[_Node]]:
        size = 1 << (len(seeded) - 1).bit_length()
        by_seed = {i + 1: e for i, e in enumerate(seeded)}

        def entrant(seed: int):
            return ("entrant", by_seed[seed].id) if seed in by_seed else None

        order = seed_order(size)
        rounds = [[
            _Node(self.winners_bracket, 1, i, [entrant(order[2 * i]), entrant(order[2 * i + 1])])
            for i in range(size // 2)
        ]]
        while len(rounds[-1]) > 1:
            prev = rounds[-1]
            rounds.append([
                _Node(self.winners_bracket, len(rounds) + 1, i, [("winner", prev[2 * i]), ("winner", prev[2 * i + 1])])
                for i in range(len(prev) // 2)
            ])
        return rounds

    def _collapse(self, nodes: List[_Node]) -> List[MatchSkeleton]:
        """Resolve byes and turn the playable nodes into skeletons.

        A node with a single real input is a walkover: it forwards that input
        and its loser is a bye. Nodes must be ordered so every source is
        processed before the nodes that read it.
        """
        for node in nodes:
            resolved = [r for r in (_resolve(s) for s in node.sources) if r is not None]
            if len(resolved) == 2:
                node.inputs = resolved
                node.winner_out = ("winner", node)
                node.loser_out = ("loser", node)
            elif resolved:
                node.winner_out = resolved[0]

        numbers: Dict[Tuple[MatchBracket, int], int] = {}
        skeletons: Dict[_Node, MatchSkeleton] = {}
        for node in nodes:
            if not node.playable:
                continue
            key = (node.bracket, node.round)
            numbers[key] = numbers.get(key, 0) + 1
            node.slug = _slug_for(node.bracket, node.round, numbers[key])
            skeletons[node] = MatchSkeleton(
                slug=node.slug,
                round=node.round,
                match_number=numbers[key],
                bracket=node.bracket,
            )

        for node, skeleton in skeletons.items():
            for slot, (kind, ref) in enumerate(node.inputs, start=1):
                if kind == "entrant":
                    setattr(skeleton, f"team{slot}_id", ref)
                elif kind == "winner":
                    skeletons[ref].next_match_slug = node.slug
                    skeletons[ref].next_match_slot = slot
                else:
                    skeletons[ref].loser_next_match_slug = node.slug
                    skeletons[ref].loser_next_match_slot = slot

        return list(skeletons.values())

    def advance(
        self,
        entrants: List[Entrant],
        matches: List[MatchRecord],
        completed: MatchRecord,
        options: Optional[BracketOptions] = None
    ) -> Advancement:
        if not completed.completed or completed.winner_id is None:
            raise GenerationError(f"Match {completed.slug} has no winner to advance")

        result = Advancement()
        if completed.next_match_slug:
            result.placements.append(
                Placement(completed.next_match_slug, completed.next_match_slot, completed.winner_id)
            )
        if completed.loser_next_match_slug and completed.loser_id is not None:
            result.placements.append(
                Placement(completed.loser_next_match_slug, completed.loser_next_match_slot, completed.loser_id)
            )
        if not completed.next_match_slug and not completed.loser_next_match_slug:
            result.tournament_complete = True
        return result


class SingleEliminationStrategy(EliminationStrategy):
    """Knockout bracket padded to a power of two with byes collapsed"""

    winners_bracket = MatchBracket.MAIN

    def generate(
        self,
        entrants: List[Entrant],
        match_format: MatchFormat,
        maps: List[str],
        options: Optional[BracketOptions] = None
    ) -> BracketPlan:
        options = options or BracketOptions()
        self._validate(entrants, match_format, maps)
        rounds = self._winners_rounds(self._seeded(entrants, options))
        matches = self._collapse([n for r in rounds for n in r])
        LOG.info(f"Generated single elimination bracket: {len(entrants)} entrants, {len(matches)} matches")
        return BracketPlan(matches=matches, total_rounds=len(rounds))


class DoubleEliminationStrategy(EliminationStrategy):
    """Winners and losers brackets joined by a grand final.

    The losers bracket alternates drop rounds (LB survivors meet the losers of
    the next winners round, order reversed on odd drops to delay rematches)
    with minor rounds where LB survivors play each other. A reset grand final
    is only added when the losers bracket champion wins the first one.
    """

    winners_bracket = MatchBracket.WINNERS

    def generate(
        self,
        entrants: List[Entrant],
        match_format: MatchFormat,
        maps: List[str],
        options: Optional[BracketOptions] = None
    ) -> BracketPlan:
        options = options or BracketOptions()
        self._validate(entrants, match_format, maps)
        wb = self._winners_rounds(self._seeded(entrants, options))
        lb = self._losers_rounds(wb)

        if lb:
            lb_champion = ("winner", lb[-1][0])
        else:
            # Two entrants: the winners final loser goes straight to the grand final
            lb_champion = ("loser", wb[-1][0])
        gf_round = max(len(wb), len(lb)) + 1
        grand_final = _Node(MatchBracket.GRAND_FINAL, gf_round, 0, [("winner", wb[-1][0]), lb_champion])

        nodes = [n for r in wb for n in r] + [n for r in lb for n in r] + [grand_final]
        matches = self._collapse(nodes)
        LOG.info(f"Generated double elimination bracket: {len(entrants)} entrants, {len(matches)} matches")
        return BracketPlan(matches=matches, total_rounds=gf_round)

    def _losers_rounds(self, wb: List[List[_Node]]) -> List[List[_Node]]:
        if len(wb) < 2:
            return []

        def lb_node(index: int, sources) -> _Node:
            return _Node(MatchBracket.LOSERS, len(rounds) + 1, index, sources)

        rounds: List[List[_Node]] = []
        first = wb[0]
        rounds.append([
            lb_node(i, [("loser", first[2 * i]), ("loser", first[2 * i + 1])])
            for i in range(len(first) // 2)
        ])
        for j in range(1, len(wb)):
            droppers = [("loser", n) for n in wb[j]]
            if j % 2 == 1:
                droppers.reverse()
            prev = rounds[-1]
            rounds.append([lb_node(i, [("winner", prev[i]), droppers[i]]) for i in range(len(prev))])
            if j < len(wb) - 1:
                prev = rounds[-1]
                rounds.append([
                    lb_node(i, [("winner", prev[2 * i]), ("winner", prev[2 * i + 1])])
                    for i in range(len(prev) // 2)
                ])
        return rounds

    def advance(
        self,
        entrants: List[Entrant],
        matches: List[MatchRecord],
        completed: MatchRecord,
        options: Optional[BracketOptions] = None
    ) -> Advancement:
        if completed.slug == GRAND_FINAL_RESET_SLUG:
            return Advancement(tournament_complete=True)

        if completed.slug == GRAND_FINAL_SLUG:
            if completed.winner_id is None:
                raise GenerationError("Grand final has no winner")
            if completed.winner_id != completed.team2_id:
                return Advancement(tournament_complete=True)
            if any(m.slug == GRAND_FINAL_RESET_SLUG for m in matches):
                return Advancement()
            LOG.info("Losers bracket champion won the grand final, adding reset match")
            reset = MatchSkeleton(
                slug=GRAND_FINAL_RESET_SLUG,
                round=completed.round + 1,
                match_number=1,
                bracket=MatchBracket.GRAND_FINAL,
                team1_id=completed.team1_id,
                team2_id=completed.team2_id,
            )
            return Advancement(new_matches=[reset])

        return super().advance(entrants, matches, completed, options)


class RoundRobinStrategy(BracketStrategy):
    """Every entrant meets every other entrant once (circle method)"""

    def generate(
        self,
        entrants: List[Entrant],
        match_format: MatchFormat,
        maps: List[str],
        options: Optional[BracketOptions] = None
    ) -> BracketPlan:
        options = options or BracketOptions()
        self._validate(entrants, match_format, maps)

        slots: List[Optional[Entrant]] = list(self._seeded(entrants, options))
        if len(slots) % 2 != 0:
            slots.append(None)  # Add bye
        n = len(slots)

        matches = []
        for round_number in range(1, n):
            number = 0
            for i in range(n // 2):
                team_1, team_2 = slots[i], slots[n - 1 - i]
                if team_1 is None or team_2 is None:
                    continue
                number += 1
                matches.append(MatchSkeleton(
                    slug=f"r{round_number}m{number}",
                    round=round_number,
                    match_number=number,
                    team1_id=team_1.id,
                    team2_id=team_2.id,
                ))
            # Rotate everyone but the first slot
            slots = [slots[0]] + [slots[-1]] + slots[1:-1]

        LOG.info(f"Generated round robin: {len(entrants)} entrants, {n - 1} rounds, {len(matches)} matches")
        return BracketPlan(matches=matches, total_rounds=n - 1)

    def advance(
        self,
        entrants: List[Entrant],
        matches: List[MatchRecord],
        completed: MatchRecord,
        options: Optional[BracketOptions] = None
    ) -> Advancement:
        return Advancement(tournament_complete=all(m.completed for m in matches))


class SwissStrategy(BracketStrategy):
    """Rounds generated one at a time, pairing entrants on equal records"""

    def total_rounds(self, num_entrants: int, options: BracketOptions) -> int:
        if options.swiss_rounds:
            return options.swiss_rounds
        return max(1, (num_entrants - 1).bit_length())

    def generate(
        self,
        entrants: List[Entrant],
        match_format: MatchFormat,
        maps: List[str],
        options: Optional[BracketOptions] = None
    ) -> BracketPlan:
        options = options or BracketOptions()
        self._validate(entrants, match_format, maps)
        BracketValidator.validate_swiss_rounds(options.swiss_rounds, len(entrants))

        seeded = self._seeded(entrants, options)
        bye = seeded.pop() if len(seeded) % 2 else None
        half = len(seeded) // 2
        pairs = [(seeded[i], seeded[i + half]) for i in range(half)]

        total = self.total_rounds(len(entrants), options)
        LOG.info(f"Generated swiss round 1: {len(entrants)} entrants, {total} rounds")
        return BracketPlan(matches=self._round_matches(1, pairs, bye), total_rounds=total)

    def advance(
        self,
        entrants: List[Entrant],
        matches: List[MatchRecord],
        completed: MatchRecord,
        options: Optional[BracketOptions] = None
    ) -> Advancement:
        options = options or BracketOptions()
        current = max(m.round for m in matches)
        if not all(m.completed for m in matches if m.round == current):
            return Advancement()
        if current >= self.total_rounds(len(entrants), options):
            return Advancement(tournament_complete=True)
        return Advancement(new_matches=self.pair_round(entrants, matches, current + 1))

    def pair_round(self, entrants: List[Entrant], matches: List[MatchRecord], round_number: int) -> List[MatchSkeleton]:
        wins = {e.id: 0 for e in entrants}
        opponents = {e.id: set() for e in entrants}
        had_bye = set()
        for m in matches:
            if m.is_bye:
                had_bye.add(m.team1_id)
            elif m.team1_id is not None and m.team2_id is not None:
                opponents[m.team1_id].add(m.team2_id)
                opponents[m.team2_id].add(m.team1_id)
            if m.completed and m.winner_id in wins:
                wins[m.winner_id] += 1

        ranked = sorted(entrants, key=lambda e: (-wins[e.id], -e.rating, e.seed))
        bye = None
        if len(ranked) % 2:
            candidates = [e for e in reversed(ranked) if e.id not in had_bye]
            bye = candidates[0] if candidates else ranked[-1]
            ranked = [e for e in ranked if e.id != bye.id]

        pairs = self._pair_without_rematches(ranked, opponents)
        if pairs is None:
            LOG.warning(f"Swiss round {round_number}: rematches unavoidable, pairing in standings order")
            pairs = [(ranked[i], ranked[i + 1]) for i in range(0, len(ranked), 2)]
        return self._round_matches(round_number, pairs, bye)

    def _pair_without_rematches(
        self,
        ranked: List[Entrant],
        opponents: Dict[Any, set]
    ) -> Optional[List[Tuple[Entrant, Entrant]]]:
        if not ranked:
            return []
        first, rest = ranked[0], ranked[1:]
        for i, candidate in enumerate(rest):
            if candidate.id in opponents[first.id]:
                continue
            remainder = self._pair_without_rematches(rest[:i] + rest[i + 1:], opponents)
            if remainder is not None:
                return [(first, candidate)] + remainder
        return None

    def _round_matches(
        self,
        round_number: int,
        pairs: List[Tuple[Entrant, Entrant]],
        bye: Optional[Entrant]
    ) -> List[MatchSkeleton]:
        matches = [
            MatchSkeleton(
                slug=f"r{round_number}m{n}",
                round=round_number,
                match_number=n,
                team1_id=team_1.id,
                team2_id=team_2.id,
            )
            for n, (team_1, team_2) in enumerate(pairs, start=1)
        ]
        if bye is not None:
            n = len(matches) + 1
            matches.append(MatchSkeleton(
                slug=f"r{round_number}m{n}",
                round=round_number,
                match_number=n,
                team1_id=bye.id,
                is_bye=True,
                winner_id=bye.id,
            ))
        return matches


def get_generation_strategy(tournament_type: TournamentType) -> BracketStrategy:
    """Factory function to get appropriate generation strategy"""
    strategies = {
        TournamentType.SINGLE_ELIMINATION: SingleEliminationStrategy(),
        TournamentType.DOUBLE_ELIMINATION: DoubleEliminationStrategy(),
        TournamentType.ROUND_ROBIN: RoundRobinStrategy(),
        TournamentType.SWISS: SwissStrategy(),
    }

    strategy = strategies.get(tournament_type)
    if not strategy:
        raise ValueError(f"No generation strategy for tournament type: {tournament_type}")

    return strategy
