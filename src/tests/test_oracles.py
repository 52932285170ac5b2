import pytest
from eth_abi import encode
from eth_utils import decode_hex, encode_hex
from synthetix_erc7412.exceptions import (
    ContractCallError,
    MalformedOracleError,
    OracleDataRequired,
)
from synthetix_erc7412.utils.erc7412 import (
    SELECTOR_ORACLE_DATA_REQUIRED,
    aggregate_erc7412_price_requests,
    decode_erc7412_errors_error,
    decode_erc7412_oracle_data_required_error,
    has_selector,
    raise_for_revert,
)

# revert(string) from a require statement
REVERT_STRING = decode_hex("0x08c379a0") + encode(["string"], ["Insufficient margin"])


def test_update_type_1_with_staleness(chain, feed_ids):
    error = chain.oracle_error([feed_ids["ETH"], feed_ids["BTC"]], staleness=3600)

    info = decode_erc7412_oracle_data_required_error(error)

    assert info.oracle_address == chain.oracle_address
    assert info.update_type == 1
    assert info.staleness_tolerance == 3600
    assert info.feed_ids == [feed_ids["ETH"], feed_ids["BTC"]]
    assert info.raw_feed_ids == [decode_hex(feed_ids["ETH"]), decode_hex(feed_ids["BTC"])]
    assert info.fee == 0


def test_update_type_2_with_publish_time(chain, feed_ids):
    publish_time = 1700000000 - 30
    error = chain.oracle_error([feed_ids["BTC"]], staleness=publish_time, update_type=2)

    info = decode_erc7412_oracle_data_required_error(error)

    assert info.update_type == 2
    assert info.staleness_tolerance == publish_time
    assert info.feed_ids == [feed_ids["BTC"]]


def test_oracle_data_required_with_fee(chain, feed_ids):
    error = chain.oracle_error([feed_ids["ETH"]], fee=1234)

    info = decode_erc7412_oracle_data_required_error(error)
    assert info.fee == 1234
    assert info.feed_ids == [feed_ids["ETH"]]


def test_decoder_accepts_hex_strings(chain, feed_ids):
    error = chain.oracle_error([feed_ids["ETH"]])

    info = decode_erc7412_oracle_data_required_error(encode_hex(error))
    assert info.feed_ids == [feed_ids["ETH"]]


def test_errors_with_multiple_sub_errors(chain, feed_ids):
    errors = [
        chain.oracle_error([feed_ids["ETH"]], staleness=3600),
        chain.oracle_error([feed_ids["BTC"], feed_ids["ETH"]], staleness=60),
        chain.oracle_error([feed_ids["SNX"]], staleness=1699999970, update_type=2),
    ]
    error_data = chain.errors(errors)

    assert decode_erc7412_errors_error(error_data) == errors

    requests = aggregate_erc7412_price_requests(error_data)
    latest = requests.pyth_latest[chain.oracle_address]
    assert list(requests.pyth_latest) == [chain.oracle_address]
    assert latest.feed_ids == [feed_ids["ETH"], feed_ids["BTC"]]
    assert latest.staleness_tolerance == 60
    assert len(requests.pyth_vaa) == 1
    assert requests.pyth_vaa[0].feed_ids == [feed_ids["SNX"]]
    assert requests.pyth_vaa[0].publish_time == 1699999970
    assert requests.pyth_vaa[0].oracle_address == chain.oracle_address
    assert requests.feed_ids() == [feed_ids["ETH"], feed_ids["BTC"], feed_ids["SNX"]]


def test_nested_errors(chain, feed_ids):
    inner = chain.errors([chain.oracle_error([feed_ids["BTC"]])])
    error_data = chain.errors([chain.oracle_error([feed_ids["ETH"]]), inner])

    requests = aggregate_erc7412_price_requests(error_data)
    assert requests.pyth_latest[chain.oracle_address].feed_ids == [
        feed_ids["ETH"],
        feed_ids["BTC"],
    ]


def test_latest_requests_grouped_by_oracle(chain, feed_ids):
    other_oracle = "0x0000000000000000000000000000000000009999"
    error_data = chain.errors(
        [
            chain.oracle_error([feed_ids["ETH"]], staleness=3600),
            chain.oracle_error([feed_ids["BTC"]], staleness=60, address=other_oracle),
            chain.oracle_error([feed_ids["SNX"]], staleness=120),
            chain.oracle_error([feed_ids["ETH"]], 1699999970, update_type=2, address=other_oracle),
        ]
    )

    requests = aggregate_erc7412_price_requests(error_data)

    assert list(requests.pyth_latest) == [chain.oracle_address, other_oracle]
    assert requests.pyth_latest[chain.oracle_address].feed_ids == [
        feed_ids["ETH"],
        feed_ids["SNX"],
    ]
    assert requests.pyth_latest[chain.oracle_address].staleness_tolerance == 120
    assert requests.pyth_latest[other_oracle].feed_ids == [feed_ids["BTC"]]
    assert requests.pyth_latest[other_oracle].staleness_tolerance == 60
    assert requests.pyth_vaa[0].oracle_address == other_oracle


def test_fees_are_summed(chain, feed_ids):
    error_data = chain.errors(
        [
            chain.oracle_error([feed_ids["ETH"]], fee=10),
            chain.oracle_error([feed_ids["BTC"]], fee=15),
        ]
    )

    requests = aggregate_erc7412_price_requests(error_data)
    assert requests.pyth_latest[chain.oracle_address].fee == 25


def test_raise_for_revert_oracle_error(chain, feed_ids):
    error = chain.oracle_error([feed_ids["ETH"]])

    with pytest.raises(OracleDataRequired) as err:
        raise_for_revert(error)

    assert err.value.requests.feed_ids() == [feed_ids["ETH"]]
    assert err.value.revert_data == error


def test_raise_for_revert_other_error():
    with pytest.raises(ContractCallError) as err:
        raise_for_revert(REVERT_STRING)
    assert err.value.revert_data == REVERT_STRING


def test_non_oracle_sub_error_keeps_payload(chain, feed_ids):
    error_data = chain.errors([chain.oracle_error([feed_ids["ETH"]]), REVERT_STRING])

    with pytest.raises(ContractCallError) as err:
        raise_for_revert(error_data)
    assert err.value.revert_data == error_data


def test_empty_errors_bundle(chain):
    with pytest.raises(ContractCallError):
        raise_for_revert(chain.errors([]))


def test_unknown_update_type(chain, feed_ids):
    error = chain.oracle_error([feed_ids["ETH"]], update_type=3)

    with pytest.raises(MalformedOracleError) as err:
        raise_for_revert(error)
    assert err.value.revert_data == error


def test_truncated_oracle_error(chain, feed_ids):
    error = chain.oracle_error([feed_ids["ETH"]])[:68]

    with pytest.raises(MalformedOracleError):
        raise_for_revert(error)


def test_truncated_errors_bundle(chain, feed_ids):
    error = chain.errors([chain.oracle_error([feed_ids["ETH"]])])[:40]

    with pytest.raises(MalformedOracleError):
        raise_for_revert(error)


def test_has_selector():
    selector = decode_hex(SELECTOR_ORACLE_DATA_REQUIRED)

    assert has_selector(selector + b"\x00" * 32, SELECTOR_ORACLE_DATA_REQUIRED)
    assert has_selector(encode_hex(selector), SELECTOR_ORACLE_DATA_REQUIRED)
    assert not has_selector(selector[:3], SELECTOR_ORACLE_DATA_REQUIRED)
    assert not has_selector(b"", SELECTOR_ORACLE_DATA_REQUIRED)
    assert not has_selector(None, SELECTOR_ORACLE_DATA_REQUIRED)

    # every single bit flip is rejected
    for i in range(32):
        flipped = bytearray(selector)
        flipped[i // 8] ^= 1 << (i % 8)
        assert not has_selector(bytes(flipped), SELECTOR_ORACLE_DATA_REQUIRED)


def test_short_payloads_are_other_errors():
    for payload in [b"", b"\xcf", b"\xcf\x2c\xab"]:
        with pytest.raises(ContractCallError):
            raise_for_revert(payload)
