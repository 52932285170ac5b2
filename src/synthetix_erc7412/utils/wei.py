"""Fixed point conversions between on-chain integers and decimal amounts."""

from decimal import Decimal

from ..constants import ETH_DECIMAL


def _scale(decimals: int) -> Decimal:
    return ETH_DECIMAL if decimals == 18 else Decimal(10) ** decimals


def wei_to_ether(wei_value: int) -> float:
    """
    Convert an 18 decimal fixed point integer to a float::

        >>> wei_to_ether(1500000000000000000)
        1.5

    :param int wei_value: wei value to convert
    :return: ether value
    :rtype: float
    """
    return format_wei(wei_value, 18)


def ether_to_wei(ether_value: float) -> int:
    """
    Convert an amount to an 18 decimal fixed point integer::

        >>> ether_to_wei(1.5)
        1500000000000000000

    The value goes through ``str`` first, so ``0.1`` converts exactly.

    :param float ether_value: ether value to convert
    :return: wei value
    :rtype: int
    """
    return format_ether(ether_value, 18)


def format_ether(ether_value: float, decimals: int = 18) -> int:
    """
    Convert an amount to a fixed point integer with ``decimals`` decimals::

        >>> format_ether(2.5, 6)
        2500000

    Digits beyond ``decimals`` are truncated toward zero.

    :param float ether_value: value to convert
    :param int decimals: number of decimals of the token
    :return: fixed point value
    :rtype: int
    """
    return int(Decimal(str(ether_value)) * _scale(decimals))


def format_wei(wei_value: int, decimals: int = 18) -> float:
    """
    Convert a fixed point integer with ``decimals`` decimals to a float::

        >>> format_wei(2500000, 6)
        2.5

    :param int wei_value: fixed point value to convert
    :param int decimals: number of decimals of the token
    :return: decimal value
    :rtype: float
    """
    return float(Decimal(str(wei_value)) / _scale(decimals))
