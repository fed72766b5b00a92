"""
Tests for address validation, DIDs and wallet signature login.
"""

import json
import time
from datetime import datetime, timedelta, timezone

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from fastapi import HTTPException
from sqlalchemy import select

from checkin_payout.auth.wallet_auth import WalletAuth, WalletVerificationService, login_with_signature
from checkin_payout.core.exceptions import AuthenticationError, ValidationError
from checkin_payout.models import ActivityAction, ActivityLog, User, UserRole
from checkin_payout.utils.validation import EvmValidator, build_did, parse_did


def sign(account, message: str) -> str:
    return account.sign_message(encode_defunct(text=message)).signature.to_0x_hex()


def login_message(address: str, **extra) -> str:
    return json.dumps({"wallet": address, "timestamp": int(time.time()), **extra})


def test_address_validation():
    account = Account.create()

    assert EvmValidator.is_valid_address(account.address)
    assert EvmValidator.is_valid_address(account.address.lower())
    assert not EvmValidator.is_valid_address("0x1234")
    assert not EvmValidator.is_valid_address(None)

    # Mixed case with a broken checksum
    broken = account.address[:2] + account.address[2:].swapcase()
    if broken[2:] not in (broken[2:].lower(), broken[2:].upper()):
        assert not EvmValidator.is_valid_address(broken)


def test_amount_validation():
    assert EvmValidator.is_valid_amount("10000000000000000000")
    assert not EvmValidator.is_valid_amount("1.5")
    assert not EvmValidator.is_valid_amount("")


def test_did_round_trip():
    address = "0x" + "AB" * 20
    did = build_did(137, address)

    assert did == "did:pkh:eip155:137:0x" + "ab" * 20
    assert parse_did(did) == (137, "0x" + "ab" * 20)

    with pytest.raises(ValidationError):
        parse_did("did:web:example.com")
    with pytest.raises(ValidationError):
        build_did(137, "0xnope")


def test_signature_recovery():
    account = Account.create()
    message = login_message(account.address)

    result = WalletVerificationService.verify_wallet_signature(account.address, sign(account, message), message)

    assert result == {"valid": True, "wallet": account.address.lower()}


def test_signature_from_other_wallet_rejected():
    signer = Account.create()
    claimed = Account.create()
    message = login_message(claimed.address)

    result = WalletVerificationService.verify_wallet_signature(claimed.address, sign(signer, message), message)

    assert result["valid"] is False


def test_stale_message_rejected():
    account = Account.create()
    message = json.dumps({"wallet": account.address, "timestamp": int(time.time()) - 3600})

    result = WalletVerificationService.verify_wallet_signature(account.address, sign(account, message), message)

    assert result["valid"] is False
    assert "too old" in result["error"]


def test_access_token_round_trip():
    auth = WalletAuth(secret_key="unit-test-secret-0123456789abcdef0123")
    user = User(id="user-1", did=build_did(137, "0x" + "ab" * 20), wallet_address="0x" + "ab" * 20,
                chain_id=137, role=UserRole.ADMIN)

    claims = auth.validate_token(auth.issue_token(user))

    assert claims["sub"] == "user-1"
    assert claims["wallet"] == user.wallet_address
    assert claims["role"] == "ADMIN"
    assert auth.extract_wallet_from_bearer_token(auth.issue_token(user)) == user.wallet_address


def test_access_token_rejections():
    auth = WalletAuth(secret_key="unit-test-secret-0123456789abcdef0123")
    user = User(id="user-1", did=build_did(137, "0x" + "ab" * 20), wallet_address="0x" + "ab" * 20,
                chain_id=137, role=UserRole.USER)

    forged = WalletAuth(secret_key="someone-elses-secret-0123456789abcdef").issue_token(user)
    expired = auth.issue_token(user, now=datetime.now(timezone.utc) - timedelta(hours=25))

    with pytest.raises(HTTPException) as exc_info:
        auth.validate_token(forged)
    assert exc_info.value.detail["error"] == "INVALID_TOKEN"

    with pytest.raises(HTTPException) as exc_info:
        auth.validate_token(expired)
    assert exc_info.value.status_code == 401
    assert exc_info.value.detail["error"] == "TOKEN_EXPIRED"

    # A bare wallet address is not a token
    assert auth.extract_wallet_from_bearer_token(user.wallet_address) is None
    assert auth.extract_wallet_from_bearer_token("garbage") is None


@pytest.mark.asyncio
async def test_login_creates_then_updates_user(session):
    account = Account.create()
    message = login_message(account.address)
    signature = sign(account, message)

    user = await login_with_signature(session, account.address, 137, message, signature)

    assert user.wallet_address == account.address.lower()
    assert user.did == f"did:pkh:eip155:137:{account.address.lower()}"
    first_login = user.last_login_at

    again = await login_with_signature(session, account.address, 137, message, signature)
    assert again.id == user.id
    assert again.last_login_at >= first_login

    users = (await session.execute(select(User))).scalars().all()
    assert len(users) == 1
    logs = (await session.execute(
        select(ActivityLog).where(ActivityLog.action == ActivityAction.AUTHORIZATION)
    )).scalars().all()
    assert [log.meta["newUser"] for log in logs] == [True, False]


@pytest.mark.asyncio
async def test_login_rejects_bad_signature(session):
    account = Account.create()
    message = login_message(account.address)
    forged = sign(Account.create(), message)

    with pytest.raises(AuthenticationError):
        await login_with_signature(session, account.address, 137, message, forged)


@pytest.mark.asyncio
async def test_login_rejects_chain_switch(session):
    account = Account.create()
    message = login_message(account.address)
    signature = sign(account, message)
    await login_with_signature(session, account.address, 137, message, signature)

    with pytest.raises(ValidationError):
        await login_with_signature(session, account.address, 1, message, signature)
