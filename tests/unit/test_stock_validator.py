"""
Unit tests for the stock validator.
"""

from storefront.services.stock_validator import validate, StockEvent
from conftest import make_line


def test_quantity_above_stock_is_clamped():
    result = validate([make_line('A', 1000, quantity=5, name='Keyboard')], {'A': 2})

    assert result.lines[0].quantity == 2
    assert result.lines[0].stock_quantity == 2
    assert result.clamped == [StockEvent('A', 'Keyboard')]
    assert result.removed == []


def test_zero_stock_removes_line():
    result = validate([make_line('A', 1000, quantity=1, name='Mouse'), make_line('B', 10)], {'A': 0})

    assert [line.product_id for line in result.lines] == ['B']
    assert result.removed == [StockEvent('A', 'Mouse')]
    assert result.changed


def test_negative_stock_counts_as_exhausted():
    result = validate([make_line('A', 1000)], {'A': -3})
    assert result.lines == []
    assert len(result.removed) == 1


def test_unknown_stock_leaves_line_alone():
    line = make_line('A', 1000, quantity=7)
    result = validate([line], {})
    assert result.lines == [line]
    assert not result.changed


def test_stock_is_recorded_when_within_limit():
    result = validate([make_line('A', 1000, quantity=2)], {'A': 10})
    assert result.lines[0].quantity == 2
    assert result.lines[0].stock_quantity == 10
    assert not result.changed
