from typing import Any, Dict, List

from aiogram.types import KeyboardButton, ReplyKeyboardMarkup


def main_kb() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        keyboard=[
            [KeyboardButton(text="/orders"), KeyboardButton(text="/returns")],
            [KeyboardButton(text="/low_stock"), KeyboardButton(text="/sales")],
            [KeyboardButton(text="/coupons"), KeyboardButton(text="/offers")],
            [KeyboardButton(text="/help")],
        ],
        resize_keyboard=True,
    )


def categories_kb(categories: List[Dict[str, Any]]) -> ReplyKeyboardMarkup:
    rows = [[KeyboardButton(text=c["name"])] for c in categories]
    rows.append([KeyboardButton(text="/cancel")])
    return ReplyKeyboardMarkup(keyboard=rows, resize_keyboard=True, one_time_keyboard=True)
