import pytest
from eth_abi import encode as abi_encode
from web3.exceptions import TransactionNotFound

from cctp_recovery.config import TRANSFER_EVENT
from cctp_recovery.errors import NetworkError
from cctp_recovery.rpc import ChainReader, address_topic, as_hex, event_topic, format_amount

from conftest import RECIPIENT


class FakeEth:
    def __init__(self, url, fail=False, height=0, balance=0, missing=False):
        self.url = url
        self.fail = fail
        self.height = height
        self.balance = balance
        self.missing = missing
        self.log_params = []
        self.calls = 0

    def _check(self):
        self.calls += 1
        if self.fail:
            raise ConnectionError(f"{self.url} unreachable")

    @property
    def block_number(self):
        self._check()
        return self.height

    def get_transaction_receipt(self, tx_hash):
        self._check()
        if self.missing:
            raise TransactionNotFound(f"Transaction with hash {tx_hash} not found")
        return {"status": 1, "logs": []}

    def get_logs(self, params):
        self._check()
        self.log_params.append(params)
        return []

    def call(self, tx):
        self._check()
        return abi_encode(["uint256"], [self.balance])


class FakeWeb3:
    def __init__(self, eth):
        self.eth = eth


def reader_with(*eths, retries=0):
    by_url = {eth.url: eth for eth in eths}
    return ChainReader(
        "arc_testnet",
        endpoints=[eth.url for eth in eths],
        retries=retries,
        retry_delay=0,
        web3_factory=lambda url, timeout: FakeWeb3(by_url[url]),
        sleep=lambda s: None,
    )


def test_falls_back_to_next_endpoint_and_reports_it():
    primary = FakeEth("https://primary", fail=True)
    backup = FakeEth("https://backup", height=4242)
    reader = reader_with(primary, backup)

    assert reader.block_number() == 4242
    assert reader.last_endpoint == "https://backup"


def test_retries_the_same_endpoint_before_moving_on():
    primary = FakeEth("https://primary", fail=True)
    backup = FakeEth("https://backup", height=1)
    reader = reader_with(primary, backup, retries=2)

    reader.block_number()

    assert primary.calls == 3


def test_network_error_when_every_endpoint_fails():
    reader = reader_with(FakeEth("https://a", fail=True), FakeEth("https://b", fail=True))

    with pytest.raises(NetworkError) as exc:
        reader.block_number()

    assert exc.value.endpoints == ["https://a", "https://b"]
    assert isinstance(exc.value.last_error, ConnectionError)


def test_unknown_transaction_is_none_not_an_error():
    a = FakeEth("https://a", missing=True)
    b = FakeEth("https://b", missing=True)
    reader = reader_with(a, b, retries=3)

    assert reader.get_receipt("0x" + "11" * 32) is None
    # An answer is not retried on the same endpoint
    assert a.calls == 1


def test_get_logs_builds_topic_filter():
    eth = FakeEth("https://a")
    reader = reader_with(eth)

    reader.get_logs(reader.cfg["usdc_address"], TRANSFER_EVENT, 10, 20, [None, address_topic(RECIPIENT)])

    params = eth.log_params[0]
    assert params["fromBlock"] == 10
    assert params["toBlock"] == 20
    assert params["topics"] == [event_topic(TRANSFER_EVENT), None, address_topic(RECIPIENT)]


def test_token_balance_reads_and_formats():
    reader = reader_with(FakeEth("https://a", balance=2_500_000))

    balance = reader.token_balance(RECIPIENT)

    assert balance["balance"] == 2_500_000
    assert balance["balance_formatted"] == "2.5"
    assert balance["available"] is True
    assert balance["endpoint"] == "https://a"


def test_token_balance_unavailable_instead_of_raising():
    reader = reader_with(FakeEth("https://a", fail=True))

    balance = reader.token_balance(RECIPIENT)

    assert balance["available"] is False
    assert balance["balance"] == 0
    assert "failed on all 1 RPC endpoints" in balance["error"]


def test_topic_helpers():
    assert event_topic("Transfer(address,address,uint256)") == (
        "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
    )
    assert address_topic(RECIPIENT) == "0x" + "00" * 12 + "ab" * 20
    assert as_hex(bytes.fromhex("ABCD")) == "0xabcd"
    assert as_hex("ABCD") == "0xabcd"
    assert as_hex(None) is None


@pytest.mark.parametrize("raw, expected", [
    (10_000_000, "10"),
    (1_500_000, "1.5"),
    (1, "0.000001"),
    (0, "0"),
])
def test_format_amount(raw, expected):
    assert format_amount(raw) == expected
