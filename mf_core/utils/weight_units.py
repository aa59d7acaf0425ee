"""
重量单位换算
"""
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Dict, Union

Number = Union[Decimal, int, float, str]

WEIGHT_UNITS = ("kg", "g", "lb", "oz")

# 换算系数：CONVERSION_FACTORS[from][to]
CONVERSION_FACTORS: Dict[str, Dict[str, Decimal]] = {
    "kg": {"kg": Decimal("1"), "g": Decimal("1000"), "lb": Decimal("2.20462"), "oz": Decimal("35.274")},
    "g": {"kg": Decimal("0.001"), "g": Decimal("1"), "lb": Decimal("0.00220462"), "oz": Decimal("0.035274")},
    "lb": {"kg": Decimal("0.453592"), "g": Decimal("453.592"), "lb": Decimal("1"), "oz": Decimal("16")},
    "oz": {"kg": Decimal("0.0283495"), "g": Decimal("28.3495"), "lb": Decimal("0.0625"), "oz": Decimal("1")},
}


def normalize_unit(unit: str) -> str:
    """校验并规范化单位"""
    normalized = (unit or "").strip().lower()
    if normalized not in CONVERSION_FACTORS:
        raise ValueError(f"Unsupported weight unit: {unit!r}")
    return normalized


def convert_weight(value: Number, from_unit: str, to_unit: str) -> Decimal:
    """单位换算"""
    from_unit = normalize_unit(from_unit)
    to_unit = normalize_unit(to_unit)
    value = Decimal(str(value))
    if from_unit == to_unit:
        return value
    return value * CONVERSION_FACTORS[from_unit][to_unit]


def estimate_quantity(
    material_quantity: Number,
    material_unit: str,
    unit_weight: Number,
    unit_weight_unit: str,
) -> int:
    """估算剩余原料还能生产多少件"""
    unit_weight = Decimal(str(unit_weight))
    if unit_weight <= 0:
        return 0
    converted = convert_weight(material_quantity, material_unit, unit_weight_unit)
    if converted <= 0:
        return 0
    return int((converted / unit_weight).to_integral_value(rounding=ROUND_DOWN))


def format_weight(value: Number, unit: str) -> str:
    return f"{Decimal(str(value)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)} {unit}"
