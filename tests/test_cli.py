"""
Tests for the command line interface.
"""

from coincurve import PrivateKey
from typer.testing import CliRunner

from trustless_oracle.address import TESTNET, pubkey_to_p2pkh_address
from trustless_oracle.cli import app

from conftest import USER_KEY_BYTES, sign_bitcoin_message

runner = CliRunner()


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "trustless-oracle v0.1.0" in result.output


class TestVerifyMessage:
    def _signed(self, message: str):
        key = PrivateKey(USER_KEY_BYTES)
        address = pubkey_to_p2pkh_address(key.public_key.format(compressed=True), TESTNET)
        return address, sign_bitcoin_message(key, message)

    def test_valid_signature(self):
        address, signature = self._signed("hello bridge")
        result = runner.invoke(app, ["verify-message", "hello bridge", signature, address])
        assert result.exit_code == 0
        assert "Signature is valid" in result.output

    def test_wrong_message(self):
        address, signature = self._signed("hello bridge")
        result = runner.invoke(app, ["verify-message", "goodbye bridge", signature, address])
        assert result.exit_code == 1
        assert "NOT valid" in result.output

    def test_wrong_network(self):
        address, signature = self._signed("hello bridge")
        result = runner.invoke(
            app, ["verify-message", "hello bridge", signature, address, "--bitcoin-network", "mainnet"]
        )
        assert result.exit_code == 1


def test_run_rejects_invalid_configuration(tmp_path):
    env_file = tmp_path / "bad.env"
    env_file.write_text("BITCOIN_NETWORK=signet\n")
    result = runner.invoke(app, ["run", "--config", str(env_file)])
    assert result.exit_code == 2
