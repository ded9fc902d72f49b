from aiogram.fsm.state import State, StatesGroup


class ProductAdd(StatesGroup):
    waiting_category = State()
    waiting_name = State()
    waiting_price = State()
    waiting_sizes = State()
