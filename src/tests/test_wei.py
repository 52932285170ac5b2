from synthetix_erc7412.utils import ether_to_wei, wei_to_ether, format_ether, format_wei


def test_ether_to_wei():
    assert ether_to_wei(1) == 10**18
    assert ether_to_wei(1.5) == 1500000000000000000
    assert ether_to_wei(0.1) == 100000000000000000
    assert ether_to_wei(-2) == -2 * 10**18


def test_wei_to_ether():
    assert wei_to_ether(10**18) == 1.0
    assert wei_to_ether(1500000000000000000) == 1.5
    assert wei_to_ether(0) == 0.0


def test_format_with_decimals():
    assert format_ether(2.5, decimals=6) == 2500000
    assert format_wei(2500000, decimals=6) == 2.5

    # digits beyond the token decimals are dropped
    assert format_ether(1.0000001, decimals=6) == 1000000
