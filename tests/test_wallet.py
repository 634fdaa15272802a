from __future__ import annotations

import json
from decimal import Decimal
from types import SimpleNamespace

import pytest
from solana.exceptions import SolanaRpcException
from solana.rpc.core import RPCException
from solders.keypair import Keypair

from trend_trader.trading.errors import BalanceUnavailableError, ConfigurationError
from trend_trader.trading.types import SOL_MINT, USDC_MINT
from trend_trader.trading.wallet import SigningKey, WalletBalanceReader


def test_signing_key_accepts_json_array():
    keypair = Keypair()
    key = SigningKey.from_string(json.dumps(list(bytes(keypair))))
    assert key.pubkey == keypair.pubkey()


def test_signing_key_accepts_base58():
    keypair = Keypair()
    key = SigningKey.from_string(str(keypair))
    assert key.pubkey == keypair.pubkey()
    with key.acquire() as acquired:
        assert acquired.pubkey() == keypair.pubkey()


@pytest.mark.parametrize("raw", ["", "   ", "[1, 2", "[1, 2, 3]", '["a"]'])
def test_signing_key_rejects_malformed_secrets(raw):
    with pytest.raises(ConfigurationError):
        SigningKey.from_string(raw)


def test_signing_key_never_prints_secret():
    keypair = Keypair()
    key = SigningKey(bytes(keypair))
    assert str(keypair) not in repr(key)
    assert "redacted" in str(key)


def test_destroyed_key_cannot_sign():
    key = SigningKey(bytes(Keypair()))
    key.destroy()
    assert key.destroyed
    with pytest.raises(RuntimeError):
        with key.acquire():
            pass


class FakeRpcClient:
    def __init__(self) -> None:
        self.native_error: Exception | None = None
        self.token_error: Exception | None = None

    async def get_balance(self, owner):
        if self.native_error is not None:
            raise self.native_error
        return SimpleNamespace(value=1_500_000_000)

    async def get_token_account_balance(self, account):
        if self.token_error is not None:
            raise self.token_error
        return SimpleNamespace(value=SimpleNamespace(amount="9840000"))


@pytest.mark.asyncio
async def test_balance_reader_reads_native_and_token_balances(logger):
    client = FakeRpcClient()
    reader = WalletBalanceReader(logger=logger, rpc_client=client, owner=Keypair().pubkey())

    assert await reader.fetch_balance(mint=SOL_MINT, decimals=9) == Decimal("1.5")
    assert await reader.fetch_balance(mint=USDC_MINT, decimals=6) == Decimal("9.84")

    client.token_error = RPCException("could not find account")
    assert await reader.fetch_balance(mint=USDC_MINT, decimals=6) == Decimal(0)


@pytest.mark.asyncio
async def test_balance_reader_surfaces_transport_failures_as_typed_errors(logger):
    client = FakeRpcClient()
    reader = WalletBalanceReader(logger=logger, rpc_client=client, owner=Keypair().pubkey())

    client.native_error = SolanaRpcException(OSError("connection reset"), FakeRpcClient.get_balance)
    with pytest.raises(BalanceUnavailableError) as excinfo:
        await reader.fetch_balance(mint=SOL_MINT, decimals=9)
    assert not excinfo.value.submitted
    assert excinfo.value.reason == "balance_unavailable"

    client.token_error = SolanaRpcException(OSError("connection reset"), FakeRpcClient.get_token_account_balance)
    with pytest.raises(BalanceUnavailableError) as excinfo:
        await reader.fetch_balance(mint=USDC_MINT, decimals=6)
    assert excinfo.value.details == {"mint": USDC_MINT}
