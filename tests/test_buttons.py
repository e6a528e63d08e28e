import pytest

from xray_manager.telegram.buttons import (clean_text, display_width, graphemes, is_emoji, server_button_text,
                                           truncate)

FLAG_DE = '\U0001F1E9\U0001F1EA'
FAMILY = '\U0001F468\u200d\U0001F469\u200d\U0001F467'
THUMBS_DARK = '\U0001F44D\U0001F3FF'
KEYCAP_ONE = '1\ufe0f\u20e3'
E_ACUTE = 'e\u0301'
CHECK = '\u2705'


@pytest.mark.parametrize('cluster', [FLAG_DE, FAMILY, THUMBS_DARK, KEYCAP_ONE, E_ACUTE, '\r\n'])
def test_single_clusters(cluster):
    assert graphemes(cluster) == [cluster]


def test_mixed_text_clusters():
    text = f'{FLAG_DE}{FLAG_DE} Caf{E_ACUTE}'
    assert graphemes(text) == [FLAG_DE, FLAG_DE, ' ', 'C', 'a', 'f', E_ACUTE]


def test_emoji_width():
    assert is_emoji(FLAG_DE)
    assert is_emoji(FAMILY)
    assert is_emoji(KEYCAP_ONE)
    assert not is_emoji('a')
    assert display_width(f'{FLAG_DE} Berlin') == 9
    assert display_width('Москва') == 6


def test_short_text_untouched():
    assert truncate('Berlin', 10) == 'Berlin'


def test_truncate_plain():
    assert truncate('Amsterdam Central', 10) == 'Amsterd...'


def test_truncate_never_splits_emoji():
    result = truncate(f'{FLAG_DE} Berlin Central', 10)
    assert result == f'{FLAG_DE} Berl...'
    assert display_width(result) == 10


def test_truncate_keeps_combining_mark():
    assert truncate(f'Caf{E_ACUTE} de Flore', 7) == f'Caf{E_ACUTE}...'


def test_truncate_zwj_sequence_dropped_whole():
    assert truncate(f'ab{FAMILY}cdef', 6) == 'ab...'


def test_tiny_limit():
    assert truncate('Frankfurt', 3) == '...'
    assert truncate('Frankfurt', 2) == '..'


def test_clean_text():
    assert clean_text('  Server\t\n one\x07 ') == 'Server one'
    assert clean_text('Server\tone') == 'Server one'


def test_server_button_with_icon():
    label = server_button_text('Germany Frankfurt am Main', CHECK, 16)
    assert label.startswith(f'{CHECK} ')
    assert label.endswith('...')
    assert display_width(label) <= 16
