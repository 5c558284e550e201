import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

# =========================
# Модель данных
# =========================

NO_OPTIONS = "No options available"
NO_BALLOTS = "No ballots available"
ALL_ELIMINATED = "All options eliminated - no winner"


@dataclass(frozen=True)
class Option:
    id: int
    text: str


@dataclass(frozen=True)
class Ranking:
    # option: либо голый id, либо вложенный Option (как приходит из join'а)
    option: Union[int, Option]
    rank: int

    @property
    def option_id(self) -> int:
        if isinstance(self.option, Option):
            return self.option.id
        return self.option


@dataclass(frozen=True)
class Ballot:
    id: int
    rankings: Tuple[Ranking, ...] = ()


@dataclass(frozen=True)
class Round:
    round_number: int
    vote_counts: Mapping[int, int]
    percentages: Mapping[int, float]
    remaining: Tuple[int, ...]
    eliminated: Optional[Option] = None
    eliminated_multiple: Optional[Tuple[Option, ...]] = None
    majority_winner: Optional[int] = None
    tie: bool = False

    def __post_init__(self):
        # снимок раунда read-only: словари оборачиваются в mappingproxy
        object.__setattr__(self, "vote_counts", MappingProxyType(dict(self.vote_counts)))
        object.__setattr__(self, "percentages", MappingProxyType(dict(self.percentages)))

    def __hash__(self) -> int:
        return hash((
            self.round_number,
            tuple(sorted(self.vote_counts.items())),
            tuple(sorted(self.percentages.items())),
            self.remaining,
            self.eliminated,
            self.eliminated_multiple,
            self.majority_winner,
            self.tie,
        ))

    @property
    def eliminated_ids(self) -> Tuple[int, ...]:
        if self.eliminated_multiple:
            return tuple(o.id for o in self.eliminated_multiple)
        if self.eliminated is not None:
            return (self.eliminated.id,)
        return ()


@dataclass(frozen=True)
class TallyResult:
    rounds: Tuple[Round, ...] = ()
    winner: Optional[Option] = None
    tie: bool = False
    tied_options: Tuple[Option, ...] = ()
    total_votes: int = 0
    majority_threshold: int = 0
    error: Optional[str] = None

    @property
    def majority_reached(self) -> bool:
        return any(r.majority_winner is not None for r in self.rounds)

    def as_dict(self) -> dict:
        """Плоское представление для JSON/CSV."""
        def _opt(o: Optional[Option]) -> Optional[dict]:
            return None if o is None else {"id": o.id, "text": o.text}

        return {
            "rounds": [
                {
                    "round": r.round_number,
                    "vote_counts": dict(r.vote_counts),
                    "percentages": dict(r.percentages),
                    "remaining": list(r.remaining),
                    "eliminated": _opt(r.eliminated),
                    "eliminated_multiple": (
                        [_opt(o) for o in r.eliminated_multiple] if r.eliminated_multiple else None
                    ),
                    "majority_winner": r.majority_winner,
                    "tie": r.tie,
                }
                for r in self.rounds
            ],
            "winner": _opt(self.winner),
            "tie": self.tie,
            "tied_options": [_opt(o) for o in self.tied_options],
            "total_votes": self.total_votes,
            "majority_threshold": self.majority_threshold,
            "error": self.error,
        }


# =========================
# IRV подсчёт
# =========================

def normalize_ballots(ballots: Iterable[Ballot]) -> List[List[int]]:
    """
    Каждый бюллетень -> список option_id в порядке возрастания ранга.
    Сортировка стабильная, так что при дублях рангов побеждает первый встреченный.
    """
    return [
        [r.option_id for r in sorted(b.rankings, key=lambda r: r.rank)]
        for b in ballots
    ]


def _count_votes(ballots: Sequence[Sequence[int]], remaining: Sequence[Option]) -> Dict[int, int]:
    counts = {o.id: 0 for o in remaining}
    for ballot in ballots:
        for oid in ballot:
            if oid in counts:
                counts[oid] += 1
                break
        # бюллетень без активных вариантов просто не голосует в этом раунде
    return counts


def tally(options: Optional[Sequence[Option]], ballots: Optional[Sequence[Ballot]]) -> TallyResult:
    """
    Instant-Runoff Voting.

    Возвращает TallyResult с раундами, победителем или ничьей.
    Ошибки (нет вариантов / нет бюллетеней) возвращаются в поле error, исключений нет.

    Тайбрейки:
      * ровно 2 варианта с равными голосами -> ничья;
      * 3+ варианта и у всех одинаково -> выбывает один, с минимальным id;
      * иначе выбывают все варианты с минимумом голосов разом.
    """
    if not options:
        return TallyResult(error=NO_OPTIONS)
    if not ballots:
        return TallyResult(error=NO_BALLOTS)

    normalized = normalize_ballots(ballots)
    total_votes = len(normalized)
    majority_threshold = total_votes // 2 + 1

    remaining: List[Option] = sorted(options, key=lambda o: o.id)
    rounds: List[Round] = []

    def _result(**kwargs) -> TallyResult:
        return TallyResult(
            rounds=tuple(rounds),
            total_votes=total_votes,
            majority_threshold=majority_threshold,
            **kwargs,
        )

    while len(remaining) > 1:
        counts = _count_votes(normalized, remaining)
        percentages = {
            oid: (v / total_votes) * 100 if total_votes > 0 else 0.0
            for oid, v in counts.items()
        }
        snapshot = dict(
            round_number=len(rounds) + 1,
            vote_counts=counts,
            percentages=percentages,
            remaining=tuple(o.id for o in remaining),
        )
        logging.debug(f"IRV round {snapshot['round_number']}: {counts}")

        if len(remaining) > 2:
            leader = next((o for o in remaining if counts[o.id] >= majority_threshold), None)
            if leader is not None:
                rounds.append(Round(majority_winner=leader.id, **snapshot))
                return _result(winner=leader)

            min_votes = min(counts.values())
            losers = [o for o in remaining if counts[o.id] == min_votes]
            if len(losers) == len(remaining):
                # полная ничья среди 3+: выбывает один, стабильный тайбрейк по id
                losers = losers[:1]
        else:
            a, b = remaining
            if counts[a.id] == counts[b.id]:
                rounds.append(Round(tie=True, **snapshot))
                return _result(tie=True, tied_options=(a, b))
            losers = [a if counts[a.id] < counts[b.id] else b]

        rounds.append(Round(
            eliminated=losers[0] if len(losers) == 1 else None,
            eliminated_multiple=tuple(losers) if len(losers) > 1 else None,
            **snapshot,
        ))

        lost = {o.id for o in losers}
        remaining = [o for o in remaining if o.id not in lost]
        if not remaining:
            return _result(error=ALL_ELIMINATED)

    return _result(winner=remaining[0])
