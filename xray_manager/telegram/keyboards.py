from typing import List, Sequence, Tuple, TypeVar

from ..models import Button

T = TypeVar('T')

Keyboard = List[List[Button]]

MENU = Button('🏠 Main Menu', 'nav:menu')


def paginate(items: Sequence[T], page: int, per_page: int) -> Tuple[List[T], int, int]:
    """Slice items for page, clamping page into range; returns (items, page, total_pages)"""
    total_pages = max(1, -(-len(items) // per_page))
    page = min(max(page, 0), total_pages - 1)
    start = page * per_page
    return list(items[start:start + per_page]), page, total_pages


def main_menu() -> Keyboard:
    return [
        [Button('📋 Servers', 'nav:list'), Button('🏓 Ping Test', 'nav:ping')],
        [Button('📊 Status', 'nav:status'), Button('🔄 Refresh', 'nav:refresh')],
    ]


def server_list(entries: Sequence[Tuple[str, str]], page: int, total_pages: int) -> Keyboard:
    """entries are (server id, button label) pairs"""
    keyboard = [[Button(label, f'server:{server_id}')] for server_id, label in entries]
    if total_pages > 1:
        row = []
        if page > 0:
            row.append(Button('⬅️ Prev', f'page:{page - 1}'))
        row.append(Button(f'{page + 1}/{total_pages}', 'noop'))
        if page < total_pages - 1:
            row.append(Button('Next ➡️', f'page:{page + 1}'))
        keyboard.append(row)
    keyboard.append([Button('🏓 Ping Test', 'nav:ping'), Button('🔄 Refresh', 'nav:refresh')])
    keyboard.append([MENU])
    return keyboard


def confirmation(action: str) -> Keyboard:
    return [[Button('✅ Confirm', f'confirm:{action}'), Button('❌ Cancel', 'cancel')]]


def ping_results(quick: Sequence[Tuple[str, str]]) -> Keyboard:
    keyboard = [[Button(label, f'quick:{server_id}')] for server_id, label in quick]
    keyboard.append([Button('🔄 Test Again', 'nav:ping'), Button('📋 Servers', 'nav:list')])
    keyboard.append([MENU])
    return keyboard


def status() -> Keyboard:
    return [
        [Button('🔄 Refresh Status', 'nav:status'), Button('📋 Servers', 'nav:list')],
        [MENU],
    ]


def error() -> Keyboard:
    return [[Button('📋 Servers', 'nav:list'), Button('🔄 Refresh', 'nav:refresh')], [MENU]]


def back_to_menu() -> Keyboard:
    return [[MENU]]
