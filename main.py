import asyncio
import html
import io
import logging
import secrets
from typing import Dict, List, Optional, Tuple

from aiogram import Bot, Dispatcher, F
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramBadRequest
from aiogram.filters import Command, CommandObject, CommandStart
from aiogram.types import (
    CallbackQuery,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    Message,
)
from aiogram.types.input_file import BufferedInputFile

import matplotlib
matplotlib.use("Agg")  # важно для серверов без дисплея
from matplotlib import pyplot as plt

from config import Settings, load_settings
from db import Database, PollError, PollRecord
from irv import Option
from report import format_results, plot_irv_rounds
from validation import ValidationError, parse_poll_command, rankings_from_order

STATUS_LABELS = {"draft": "черновик", "published": "открыт", "closed": "закрыт"}

# тексты ошибок из db/validation для русскоязычного интерфейса
ERROR_TEXTS = {
    "Title and at least 2 options are required": "Нужен заголовок и хотя бы 2 варианта",
    "At least 2 valid options are required": "Нужно хотя бы 2 непустых варианта",
    "All options must be ranked": "Нужно ранжировать все варианты",
    "Each option must be ranked exactly once": "Каждый вариант можно выбрать только один раз",
    "Invalid option ID": "Неизвестный вариант",
    "Rankings must be sequential (1, 2, 3, etc.)": "Места должны идти подряд: 1, 2, 3...",
    "Poll not found": "Опрос не найден",
    "Poll not found or no longer accepting votes": "Опрос не найден или голосование уже закрыто",
    "Cannot update a closed poll": "Закрытый опрос нельзя изменить",
    "Poll is already closed": "Опрос уже закрыт",
    "Invalid status": "Неизвестный статус опроса",
}


# =========================
# Клавиатура/текст
# =========================

def build_poll_text(poll: PollRecord, options_by_id: Dict[int, Option], selected: List[int]) -> str:
    lines = [f"<b>{html.escape(poll.title)}</b>"]
    if poll.description:
        lines.append(html.escape(poll.description))
    lines += [
        "",
        "Нажимайте варианты в порядке предпочтения:",
        "• выбранные добавляются в конец списка выбранных",
        "• повторное нажатие снимает выбор",
        "• нужно ранжировать все варианты",
        "",
    ]
    if selected:
        lines.append("<b>Ваш текущий порядок (1 — лучший):</b>")
        for i, oid in enumerate(selected, start=1):
            lines.append(f"{i}. {html.escape(options_by_id[oid].text)}")
    else:
        lines.append("<i>Пока ничего не выбрано.</i>")

    lines.append("")
    lines.append("Когда закончите — нажмите <b>«Отправить»</b>.")
    return "\n".join(lines)


def build_keyboard(
    poll_id: int,
    options_by_id: Dict[int, Option],
    selected: List[int],
    unselected: List[int],
) -> InlineKeyboardMarkup:
    rows: List[List[InlineKeyboardButton]] = []

    # Блок выбранных (вверху)
    for rank, oid in enumerate(selected, start=1):
        text = f"✅ {rank}. {options_by_id[oid].text}"
        rows.append([InlineKeyboardButton(text=text, callback_data=f"pick:{poll_id}:{oid}")])

    # Блок невыбранных (внизу)
    for oid in unselected:
        text = f"▫️ {options_by_id[oid].text}"
        rows.append([InlineKeyboardButton(text=text, callback_data=f"pick:{poll_id}:{oid}")])

    rows.append([InlineKeyboardButton(text="📩 Отправить", callback_data=f"submit:{poll_id}")])

    return InlineKeyboardMarkup(inline_keyboard=rows)


def toggle_pick(option_id: int, selected: List[int], unselected: List[int]) -> Tuple[List[int], List[int]]:
    if option_id in selected:
        # повторное нажатие: снять выбор, переместить вниз (в начало невыбранных)
        selected = [x for x in selected if x != option_id]
        unselected = [x for x in unselected if x != option_id]
        unselected.insert(0, option_id)
    else:
        # выбрать: переместить наверх (в конец выбранных)
        unselected = [x for x in unselected if x != option_id]
        selected = [x for x in selected if x != option_id]
        selected.append(option_id)
    return selected, unselected


def parse_callback(data: Optional[str]) -> Tuple[int, Optional[int]]:
    # "pick:3:17" -> (3, 17), "submit:3" -> (3, None)
    parts = (data or "").split(":")
    poll_id = int(parts[1])
    option_id = int(parts[2]) if len(parts) > 2 else None
    return poll_id, option_id


def parse_poll_id(command: CommandObject) -> int:
    try:
        return int((command.args or "").split()[0])
    except (IndexError, ValueError):
        raise ValidationError("Укажите номер опроса, например: /results 1")


def error_text(e: Exception) -> str:
    return ERROR_TEXTS.get(str(e), str(e))


def format_poll_line(poll: PollRecord) -> str:
    status = STATUS_LABELS.get(poll.status, poll.status)
    return f"#{poll.id} <b>{html.escape(poll.title)}</b> — {status}, бюллетеней: {poll.ballot_count}"


async def _fresh_session(db: Database, user_id: int, poll_id: int, options: List[Option]) -> Tuple[List[int], List[int]]:
    unselected = [o.id for o in options]
    secrets.SystemRandom().shuffle(unselected)
    await db.upsert_session(user_id, poll_id, [], unselected)
    return [], unselected


# =========================
# Handlers: создатель опроса
# =========================

dp = Dispatcher()


@dp.message(Command("newpoll"))
async def cmd_newpoll(message: Message, command: CommandObject, db: Database) -> None:
    try:
        title, option_texts = parse_poll_command(command.args)
        poll_id = await db.create_poll(message.from_user.id, title, option_texts)
    except ValidationError as e:
        await message.answer(
            f"{error_text(e)}\n\nФормат: <code>/newpoll Вопрос | Вариант 1 | Вариант 2 | ...</code>"
        )
        return

    await message.answer(
        f"Опрос #{poll_id} создан как черновик.\n"
        f"Опубликовать: <code>/publish {poll_id}</code>"
    )


@dp.message(Command("mypolls"))
async def cmd_mypolls(message: Message, db: Database) -> None:
    polls = await db.list_polls(message.from_user.id)
    if not polls:
        await message.answer("У вас пока нет опросов. Создайте: /newpoll")
        return
    await message.answer("\n".join(format_poll_line(p) for p in polls))


@dp.message(Command("rename"))
async def cmd_rename(message: Message, command: CommandObject, db: Database) -> None:
    try:
        poll_id = parse_poll_id(command)
        title = (command.args or "").split(maxsplit=1)[1:]
        if not title:
            raise ValidationError("Формат: /rename 1 Новый заголовок")
        poll = await db.update_poll(poll_id, message.from_user.id, title=title[0])
    except (ValidationError, PollError) as e:
        await message.answer(error_text(e))
        return
    await message.answer(format_poll_line(poll))


@dp.message(Command("describe"))
async def cmd_describe(message: Message, command: CommandObject, db: Database) -> None:
    try:
        poll_id = parse_poll_id(command)
        # без текста описание очищается
        rest = (command.args or "").split(maxsplit=1)[1:]
        poll = await db.update_poll(poll_id, message.from_user.id, description=rest[0] if rest else "")
    except (ValidationError, PollError) as e:
        await message.answer(error_text(e))
        return

    text = format_poll_line(poll)
    if poll.description:
        text += f"\n{html.escape(poll.description)}"
    await message.answer(text)


@dp.message(Command("publish"))
async def cmd_publish(message: Message, command: CommandObject, bot: Bot, db: Database) -> None:
    try:
        poll_id = parse_poll_id(command)
        poll = await db.update_poll(poll_id, message.from_user.id, status="published")
    except (ValidationError, PollError) as e:
        await message.answer(error_text(e))
        return

    me = await bot.get_me()
    link = f"https://t.me/{me.username}?start={poll.share_link}"
    await message.answer(f"{format_poll_line(poll)}\n\nСсылка для голосования:\n{link}")


@dp.message(Command("close"))
async def cmd_close(message: Message, command: CommandObject, db: Database) -> None:
    try:
        poll_id = parse_poll_id(command)
        poll = await db.close_poll(poll_id, message.from_user.id)
    except (ValidationError, PollError) as e:
        await message.answer(error_text(e))
        return
    await message.answer(f"{format_poll_line(poll)}\n\nРезультаты: <code>/results {poll.id}</code>")


@dp.message(Command("results"))
async def cmd_results(message: Message, command: CommandObject, db: Database, settings: Settings) -> None:
    user_id = message.from_user.id
    # админ видит любой опрос, остальные только свои
    creator_id = None if user_id in settings.admin_ids else user_id
    try:
        poll_id = parse_poll_id(command)
        poll, options, result = await db.tally_poll(poll_id, creator_id)
    except (ValidationError, PollError) as e:
        await message.answer(error_text(e))
        return

    await message.answer(format_results(poll.title, options, result))
    if not result.rounds:
        return

    fig, ax = plot_irv_rounds(options, result)
    buf = io.BytesIO()
    fig.savefig(buf, format="png", dpi=200, bbox_inches="tight")
    plt.close(fig)  # важно, чтобы не текла память
    buf.seek(0)

    photo = BufferedInputFile(buf.getvalue(), filename=f"irv_poll_{poll.id}.png")
    await message.answer_photo(photo=photo, caption=f"IRV по {result.total_votes} бюллетеням")


# =========================
# Handlers: голосование
# =========================

@dp.message(CommandStart())
async def cmd_start(message: Message, command: CommandObject, db: Database) -> None:
    if not command.args:
        await message.answer(
            "<b>Опросы с ранжированием (IRV)</b>\n\n"
            "/newpoll Вопрос | Вариант 1 | Вариант 2 — создать опрос\n"
            "/mypolls — мои опросы\n"
            "/rename N Заголовок — переименовать\n"
            "/describe N Текст — описание (без текста — убрать)\n"
            "/publish N — опубликовать и получить ссылку\n"
            "/close N — закрыть голосование\n"
            "/results N — результаты по раундам"
        )
        return

    try:
        poll = await db.get_published_poll(command.args.strip())
    except PollError as e:
        await message.answer(error_text(e))
        return

    options = await db.get_options(poll.id)
    selected, unselected = await _fresh_session(db, message.from_user.id, poll.id, options)

    options_by_id = {o.id: o for o in options}
    text = build_poll_text(poll, options_by_id, selected)
    kb = build_keyboard(poll.id, options_by_id, selected, unselected)
    await message.answer(text, reply_markup=kb)


@dp.callback_query(F.data.startswith("pick:"))
async def on_pick(callback: CallbackQuery, db: Database) -> None:
    assert callback.message is not None
    user_id = callback.from_user.id

    try:
        poll_id, option_id = parse_callback(callback.data)
        poll = await db.get_poll(poll_id)
    except (IndexError, ValueError, PollError):
        await callback.answer("Ошибка данных.", show_alert=True)
        return

    logging.debug(f"pick: poll={poll_id} option={option_id}")

    options = await db.get_options(poll_id)
    options_by_id = {o.id: o for o in options}
    if option_id not in options_by_id:
        await callback.answer("Ошибка данных.", show_alert=True)
        return

    session = await db.get_session(user_id, poll_id)
    if session is None:
        # если сессия потерялась (рестарт бота), создадим новую
        selected, unselected = await _fresh_session(db, user_id, poll_id, options)
    else:
        selected, unselected = session

    selected, unselected = toggle_pick(option_id, selected, unselected)
    await db.upsert_session(user_id, poll_id, selected, unselected)

    text = build_poll_text(poll, options_by_id, selected)
    kb = build_keyboard(poll_id, options_by_id, selected, unselected)

    try:
        await callback.message.edit_text(text, reply_markup=kb)
    except TelegramBadRequest as e:
        # Частая причина: "message is not modified"
        if "message is not modified" not in str(e).lower():
            raise

    await callback.answer()


@dp.callback_query(F.data.startswith("submit:"))
async def on_submit(callback: CallbackQuery, db: Database) -> None:
    assert callback.message is not None
    user_id = callback.from_user.id

    try:
        poll_id, _ = parse_callback(callback.data)
    except (IndexError, ValueError):
        await callback.answer("Ошибка данных.", show_alert=True)
        return

    session = await db.get_session(user_id, poll_id)
    if session is None:
        await callback.answer("Сессия не найдена. Откройте ссылку на опрос заново.", show_alert=True)
        return

    selected, unselected = session
    if unselected:
        await callback.answer("Нужно ранжировать все варианты.", show_alert=True)
        return

    options_by_id = await db.get_options_map(poll_id)
    human = [html.escape(options_by_id[i].text) for i in selected]

    text = (
        "<b>Ваш рейтинг:</b>\n"
        + "\n".join([f"{i+1}. {t}" for i, t in enumerate(human)])
        + "\n\nПодтверждаете отправку?"
    )

    kb = InlineKeyboardMarkup(inline_keyboard=[
        [
            InlineKeyboardButton(text="✅ Да", callback_data=f"confirm_submit:{poll_id}"),
            InlineKeyboardButton(text="🔙 Нет", callback_data=f"cancel_submit:{poll_id}"),
        ]
    ])
    await callback.message.edit_text(text, reply_markup=kb)
    await callback.answer()


@dp.callback_query(F.data.startswith("confirm_submit:"))
async def on_confirm_submit(callback: CallbackQuery, db: Database) -> None:
    assert callback.message is not None
    user_id = callback.from_user.id

    try:
        poll_id, _ = parse_callback(callback.data)
    except (IndexError, ValueError):
        await callback.answer("Ошибка данных.", show_alert=True)
        return

    session = await db.get_session(user_id, poll_id)
    if session is None:
        await callback.answer("Сессия не найдена. Откройте ссылку на опрос заново.", show_alert=True)
        return

    selected, _ = session
    try:
        await db.add_ballot(
            poll_id=poll_id,
            user_id=user_id,
            username=callback.from_user.username,
            rankings=rankings_from_order(selected),
        )
    except (ValidationError, PollError) as e:
        await callback.answer(error_text(e), show_alert=True)
        return
    await db.delete_session(user_id, poll_id)

    # Убираем клавиатуру и подтверждаем
    options_by_id = await db.get_options_map(poll_id)
    text = (
        "✅ <b>Голос принят!</b>\n\n"
        "<b>Ваш рейтинг:</b>\n"
        + "\n".join([f"{i+1}. {html.escape(options_by_id[oid].text)}" for i, oid in enumerate(selected)])
    )
    await callback.message.edit_text(text, reply_markup=None)
    await callback.answer("Сохранено ✅")


@dp.callback_query(F.data.startswith("cancel_submit:"))
async def on_cancel_submit(callback: CallbackQuery, db: Database) -> None:
    assert callback.message is not None
    user_id = callback.from_user.id

    try:
        poll_id, _ = parse_callback(callback.data)
        poll = await db.get_poll(poll_id)
    except (IndexError, ValueError, PollError):
        await callback.answer("Ошибка данных.", show_alert=True)
        return

    session = await db.get_session(user_id, poll_id)
    if session is None:
        await callback.answer("Сессия не найдена. Откройте ссылку на опрос заново.", show_alert=True)
        return

    selected, unselected = session
    options_by_id = await db.get_options_map(poll_id)

    text = build_poll_text(poll, options_by_id, selected)
    kb = build_keyboard(poll_id, options_by_id, selected, unselected)

    await callback.message.edit_text(text, reply_markup=kb)
    await callback.answer()


# =========================
# Entrypoint
# =========================

async def main() -> None:
    settings = load_settings()
    logging.basicConfig(level=settings.log_level)

    bot = Bot(
        token=settings.bot_token,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )

    db = Database(settings.db_path)
    await db.connect()
    await db.init()

    try:
        await dp.start_polling(bot, db=db, settings=settings)
    finally:
        await db.close()


if __name__ == "__main__":
    asyncio.run(main())
