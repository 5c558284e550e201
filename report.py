from __future__ import annotations

import argparse
import asyncio
import csv
import html
import json
import os
import sys
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from db import Database, PollError
from irv import ALL_ELIMINATED, NO_BALLOTS, NO_OPTIONS, Option, TallyResult


# сообщения движка для чата
TALLY_ERRORS = {
    NO_OPTIONS: "в опросе нет вариантов",
    NO_BALLOTS: "ещё нет ни одного бюллетеня",
    ALL_ELIMINATED: "все варианты выбыли, победителя нет",
}


def _label(oid: int, labels: Dict[int, str]) -> str:
    return labels.get(oid, str(oid))


def _labels(options: Sequence[Option]) -> Dict[int, str]:
    return {o.id: o.text for o in options}


# ---------- Текст для чата ----------

def format_results(poll_title: str, options: Sequence[Option], result: TallyResult) -> str:
    """HTML (parse_mode=HTML): итог + разбивка по раундам."""
    labels = {oid: html.escape(text) for oid, text in _labels(options).items()}
    lines = [f"<b>{html.escape(poll_title)}</b>", ""]

    if result.error:
        error = TALLY_ERRORS.get(result.error, result.error)
        lines.append(f"Результат пока не посчитать: {html.escape(error)}")
        return "\n".join(lines)

    lines.append(f"Всего бюллетеней: {result.total_votes}")
    lines.append(f"Порог большинства: {result.majority_threshold}")
    lines.append("")

    if result.tie:
        tied = ", ".join(_label(o.id, labels) for o in result.tied_options)
        lines.append(f"🤝 <b>Ничья:</b> {tied}")
    elif result.winner is not None:
        suffix = " (большинство)" if result.majority_reached else ""
        lines.append(f"🏆 <b>Победитель:</b> {_label(result.winner.id, labels)}{suffix}")
    else:
        lines.append("Победителя определить не удалось.")

    for r in result.rounds:
        lines.append("")
        lines.append(f"<b>Раунд {r.round_number}</b>")
        # лидеры сверху, при равенстве по id
        for oid in sorted(r.remaining, key=lambda x: (-r.vote_counts[x], x)):
            lines.append(f"{_label(oid, labels)}: {r.vote_counts[oid]} ({r.percentages[oid]:.1f}%)")
        if r.majority_winner is not None:
            lines.append("✓ Большинство набрано в этом раунде")
        if r.eliminated_ids:
            out = ", ".join(_label(oid, labels) for oid in r.eliminated_ids)
            lines.append(f"Выбывает: {out}")
        if r.tie:
            lines.append("Равенство голосов в финале")

    return "\n".join(lines)


# ---------- Таблица раундов ----------

def rounds_rows(options: Sequence[Option], result: TallyResult) -> List[List[object]]:
    labels = _labels(options)
    rows: List[List[object]] = []
    for r in result.rounds:
        counts_str = "; ".join(
            f"{oid}:{r.vote_counts[oid]}" for oid in sorted(r.remaining, key=lambda x: (-r.vote_counts[x], x))
        )
        rows.append([
            r.round_number,
            sum(r.vote_counts.values()),
            result.total_votes - sum(r.vote_counts.values()),
            "; ".join(_label(oid, labels) for oid in r.eliminated_ids),
            _label(r.majority_winner, labels) if r.majority_winner is not None else "",
            int(r.tie),
            counts_str,
        ])
    return rows


ROUNDS_HEADER = ["round", "active_votes", "exhausted", "eliminated", "majority_winner", "tie", "counts"]


def write_csv(path: str, header: List[str], rows: List[List[object]]):
    with open(path, "w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow(header)
        w.writerows(rows)


# ---------- График ----------

def plot_irv_rounds(
    options: Sequence[Option],
    result: TallyResult,
    figsize: Tuple[int, int] = (12, 6),
):
    """
    Сгруппированные столбики: по X раунды, внутри раунда варианты.
    Выбывшие варианты в следующих раундах не рисуются (голосов у них нет).
    """
    labels = _labels(options)
    order = [o.id for o in sorted(options, key=lambda o: o.id)]
    n_rounds = len(result.rounds)

    fig, ax = plt.subplots(figsize=figsize)
    if n_rounds == 0:
        ax.set_title(result.error or "Раундов нет")
        ax.axis("off")
        return fig, ax

    mat = np.full((len(order), n_rounds), np.nan, dtype=float)
    for c, r in enumerate(result.rounds):
        for row, oid in enumerate(order):
            if oid in r.vote_counts:
                mat[row, c] = r.vote_counts[oid]

    x = np.arange(n_rounds)
    width = 0.8 / max(len(order), 1)
    for row, oid in enumerate(order):
        ax.bar(x + row * width - 0.4 + width / 2, np.nan_to_num(mat[row]), width, label=_label(oid, labels))

    if result.majority_threshold:
        ax.axhline(result.majority_threshold, linestyle="--", linewidth=1, color="gray", label="порог большинства")

    ax.set_xticks(x)
    ax.set_xticklabels([f"Раунд {r.round_number}" for r in result.rounds])
    ax.set_ylabel("Голоса")
    if result.tie:
        title = "Ничья"
    elif result.winner is not None:
        title = f"Победитель: {_label(result.winner.id, labels)}"
    else:
        title = result.error or ""
    ax.set_title(f"IRV по раундам — {title} (N={result.total_votes})")
    ax.legend(fontsize=8)
    fig.tight_layout()
    return fig, ax


# ---------- Отчёт из sqlite ----------

async def _load(db_path: str, poll_id: int):
    db = Database(db_path)
    await db.connect()
    try:
        return await db.tally_poll(poll_id)
    finally:
        await db.close()


def generate_report(db_path: str, poll_id: int, out_dir: str = "report") -> Optional[TallyResult]:
    # sqlite молча создаст пустой файл по опечатке в пути
    if not os.path.exists(db_path):
        raise FileNotFoundError(f"База не найдена: {db_path}")

    poll, options, result = asyncio.run(_load(db_path, poll_id))
    os.makedirs(out_dir, exist_ok=True)

    print(f"Опрос #{poll.id}: {poll.title} [{poll.status}]")
    print(f"Всего бюллетеней: {result.total_votes}")
    if result.error:
        print(f"Ошибка: {result.error}")
    elif result.tie:
        print("Ничья:", [f"{o.id}:{o.text}" for o in result.tied_options])
    elif result.winner is not None:
        print(f"Победитель: {result.winner.id} — {result.winner.text}")

    write_csv(os.path.join(out_dir, "irv_rounds.csv"), ROUNDS_HEADER, rounds_rows(options, result))

    with open(os.path.join(out_dir, "irv_result.json"), "w", encoding="utf-8") as f:
        json.dump(result.as_dict(), f, ensure_ascii=False, indent=2)

    fig, _ = plot_irv_rounds(options, result)
    fig.savefig(os.path.join(out_dir, "irv_rounds.png"), dpi=200, bbox_inches="tight")
    plt.close(fig)

    print(f"Готово. Смотри папку: {out_dir}/")
    return result


def cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="IRV отчёт по опросу")
    parser.add_argument("poll_id", type=int)
    parser.add_argument("--db", default="bot.sqlite3")
    parser.add_argument("--out", default="report")
    args = parser.parse_args(argv)

    try:
        generate_report(args.db, args.poll_id, args.out)
    except (PollError, FileNotFoundError) as e:
        print(f"Ошибка: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(cli())
