from typing import Iterable, List, Optional, Sequence, Tuple

from irv import Ranking

# =========================
# Проверки на входе (создание опроса / приём бюллетеня)
# =========================


class ValidationError(ValueError):
    pass


def clean_poll_input(title: Optional[str], option_texts: Optional[Iterable[str]]) -> Tuple[str, List[str]]:
    """Возвращает (title, options) без пробелов по краям; пустые варианты выкидываются."""
    option_texts = list(option_texts or [])
    if not title or not title.strip() or len(option_texts) < 2:
        raise ValidationError("Title and at least 2 options are required")

    valid = [t.strip() for t in option_texts if isinstance(t, str) and t.strip()]
    if len(valid) < 2:
        raise ValidationError("At least 2 valid options are required")

    return title.strip(), valid


def validate_rankings(option_ids: Sequence[int], rankings: Optional[Sequence[Ranking]]) -> None:
    """
    Бюллетень принимается, только если каждый вариант ранжирован ровно один раз
    и ранги идут подряд: 1, 2, 3, ...
    """
    if not rankings or len(rankings) != len(option_ids):
        raise ValidationError("All options must be ranked")

    ranked_ids = [r.option_id for r in rankings]
    if len(set(ranked_ids)) != len(option_ids):
        raise ValidationError("Each option must be ranked exactly once")

    known = set(option_ids)
    for oid in ranked_ids:
        if oid not in known:
            raise ValidationError("Invalid option ID")

    ranks = sorted(r.rank for r in rankings)
    for i, rank in enumerate(ranks, start=1):
        if rank != i:
            raise ValidationError("Rankings must be sequential (1, 2, 3, etc.)")


def rankings_from_order(order: Sequence[int]) -> List[Ranking]:
    # order: option_id в порядке предпочтения (лучший -> хуже)
    return [Ranking(option=oid, rank=i) for i, oid in enumerate(order, start=1)]


def parse_poll_command(args: Optional[str]) -> Tuple[str, List[str]]:
    """
    "/newpoll Обед | Пицца | Суши" -> ("Обед", ["Пицца", "Суши"]).
    Пустые куски не выкидываются здесь, этим занимается clean_poll_input.
    """
    parts = [p.strip() for p in (args or "").split("|")]
    if not parts or not parts[0]:
        raise ValidationError("Title and at least 2 options are required")
    return parts[0], parts[1:]
