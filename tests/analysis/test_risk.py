from decimal import Decimal

import pytest

from analysis.models import InventoryState, VolatilityCategory, VolatilityContext, VolatilityTrend
from analysis.risk import RiskScorer


def _context(category=VolatilityCategory.LOW, size_multiplier='1.0'):
    return VolatilityContext(
        pair='WETH/USDC',
        window_stats={},
        sample_counts={},
        category=category,
        trend=VolatilityTrend.STABLE,
        spread_multiplier=Decimal('1.0'),
        size_multiplier=Decimal(size_multiplier),
    )


def test_equal_weights_average_the_components():
    scorer = RiskScorer()
    score = scorer.score(
        InventoryState(position=Decimal('2.5'), max_position=Decimal('5')),
        Decimal('0.1'),
        Decimal('1000'),
        _context(),
    )
    assert score.inventory_risk == Decimal('0.5')
    assert score.liquidity_risk == Decimal('0.0001')
    assert score.volatility_risk == Decimal('0.1')
    assert score.composite == pytest.approx(Decimal('20.0033'), abs=Decimal('0.001'))
    assert score.recommended_max_size == pytest.approx(Decimal('5') * (1 - score.composite / 100))


def test_short_inventory_counts_as_risk():
    scorer = RiskScorer()
    long_score = scorer.score(InventoryState(Decimal('3'), Decimal('5')), Decimal('0.1'), Decimal('1000'), _context())
    short_score = scorer.score(InventoryState(Decimal('-3'), Decimal('5')), Decimal('0.1'), Decimal('1000'), _context())
    assert long_score.composite == short_score.composite


def test_composite_is_bounded():
    scorer = RiskScorer()
    worst = scorer.score(
        InventoryState(Decimal('50'), Decimal('5')),
        Decimal('10'),
        Decimal('0'),
        _context(VolatilityCategory.EXTREME, '0.25'),
    )
    assert worst.inventory_risk == 1
    assert worst.liquidity_risk == 1
    assert worst.composite == 100
    assert worst.recommended_max_size == 0

    calm = scorer.score(InventoryState(Decimal('0'), Decimal('5')), Decimal('0'), Decimal('1000'), _context())
    assert Decimal('0') <= calm.composite <= Decimal('100')


def test_custom_weights_emphasize_one_component():
    scorer = RiskScorer((Decimal('1'), Decimal('0'), Decimal('0')))
    score = scorer.score(
        InventoryState(Decimal('1'), Decimal('5')),
        Decimal('0.1'),
        Decimal('1'),
        _context(VolatilityCategory.EXTREME),
    )
    assert score.composite == Decimal('20')


def test_size_multiplier_scales_recommendation():
    scorer = RiskScorer()
    low = scorer.score(InventoryState(Decimal('0'), Decimal('5')), Decimal('0.1'), Decimal('1000'), _context())
    high = scorer.score(
        InventoryState(Decimal('0'), Decimal('5')),
        Decimal('0.1'),
        Decimal('1000'),
        _context(VolatilityCategory.HIGH, '0.5'),
    )
    assert high.recommended_max_size < low.recommended_max_size


@pytest.mark.parametrize("weights", [
    (Decimal('-0.1'), Decimal('0.6'), Decimal('0.5')),
    (Decimal('0'), Decimal('0'), Decimal('0')),
])
def test_invalid_weights_are_rejected(weights):
    with pytest.raises(ValueError):
        RiskScorer(weights)
