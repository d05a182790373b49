"""Password reset and account reactivation by emailed token."""

import re
import uuid
from datetime import timedelta
from urllib.parse import unquote

import pytest
from sqlalchemy.exc import SQLAlchemyError

from artifyme.auth.token_hash import compose_token, hash_secret, split_token, verify_secret
from artifyme.db.models import AccountReactivationToken, PasswordResetToken, utcnow
from artifyme.services.account_service import AccountService

NEW_PASSWORD = "correct-horse-9"


def _token_from(mail: dict) -> str:
    match = re.search(r'\?token=([^"<]+)', mail["html"])
    assert match, "no token link in email"
    return unquote(match.group(1))


# ═══════════════════════════════════════════════════════════
# Token format
# ═══════════════════════════════════════════════════════════


def test_compose_and_split():
    token_id = uuid.uuid4()
    assert split_token(compose_token(token_id, "s3cr.et")) == (token_id, "s3cr.et")


@pytest.mark.parametrize("raw", ["", "no-dot", "not-a-uuid.secret", f"{uuid.uuid4()}."])
def test_split_rejects_malformed(raw):
    assert split_token(raw) is None


def test_secret_hash_verifies_only_the_original():
    stored = hash_secret("the-secret")
    assert stored != "the-secret"
    assert verify_secret("the-secret", stored)
    assert not verify_secret("another-secret", stored)
    assert not verify_secret("the-secret", "not-a-bcrypt-hash")


# ═══════════════════════════════════════════════════════════
# Password reset
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_password_reset_flow(client, user, mailer, keycloak, db_session):
    r = await client.post("/api/auth/password-reset", json={"email": "ANA@example.com"})
    assert r.status_code == 200

    [mail] = mailer.sent
    assert mail["to"] == user.email
    token = _token_from(mail)

    token_id, secret = split_token(token)
    record = await db_session.get(PasswordResetToken, token_id)
    assert record.token_hash != secret
    assert record.used_at is None

    r = await client.post(
        "/api/auth/password-reset/confirm",
        json={"token": token, "new_password": NEW_PASSWORD},
    )
    assert r.status_code == 200
    assert ("reset_password", user.keycloak_id) in keycloak.calls
    assert record.used_at is not None


@pytest.mark.asyncio
async def test_password_reset_token_is_single_use(client, user, mailer):
    await client.post("/api/auth/password-reset", json={"email": user.email})
    token = _token_from(mailer.sent[0])
    body = {"token": token, "new_password": NEW_PASSWORD}

    assert (await client.post("/api/auth/password-reset/confirm", json=body)).status_code == 200
    r = await client.post("/api/auth/password-reset/confirm", json=body)
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid or expired token"


@pytest.mark.asyncio
async def test_password_reset_unknown_email_answers_the_same(client, user, mailer):
    known = await client.post("/api/auth/password-reset", json={"email": user.email})
    unknown = await client.post("/api/auth/password-reset", json={"email": "who@example.com"})
    assert unknown.status_code == 200
    assert unknown.json() == known.json()
    assert len(mailer.sent) == 1


@pytest.mark.asyncio
async def test_password_reset_wrong_secret_is_400(client, user, mailer, keycloak):
    await client.post("/api/auth/password-reset", json={"email": user.email})
    token_id, _ = split_token(_token_from(mailer.sent[0]))

    r = await client.post(
        "/api/auth/password-reset/confirm",
        json={"token": compose_token(token_id, "guessed-secret"), "new_password": NEW_PASSWORD},
    )
    assert r.status_code == 400
    assert not any(call[0] == "reset_password" for call in keycloak.calls)


@pytest.mark.asyncio
async def test_password_reset_expired_token_is_400(client, user, mailer, db_session):
    await client.post("/api/auth/password-reset", json={"email": user.email})
    token = _token_from(mailer.sent[0])
    record = await db_session.get(PasswordResetToken, split_token(token)[0])
    record.expires_at = utcnow() - timedelta(minutes=1)
    await db_session.commit()

    r = await client.post(
        "/api/auth/password-reset/confirm",
        json={"token": token, "new_password": NEW_PASSWORD},
    )
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_password_reset_skips_deactivated_accounts(client, make_user, mailer):
    await make_user("kc-gone", "gone@example.com", deleted_at=utcnow())
    r = await client.post("/api/auth/password-reset", json={"email": "gone@example.com"})
    assert r.status_code == 200
    assert mailer.sent == []


# ═══════════════════════════════════════════════════════════
# Reactivation
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_reactivation_flow(client, make_user, mailer, keycloak):
    gone = await make_user("kc-gone", "gone@example.com", deleted_at=utcnow())

    r = await client.post("/api/auth/reactivate-request", json={"email": "gone@example.com"})
    assert r.status_code == 200
    token = _token_from(mailer.sent[0])
    assert "/reactivate?token=" in mailer.sent[0]["html"]

    r = await client.post("/api/auth/reactivate-confirm", json={"token": token})
    assert r.status_code == 200
    assert gone.deleted_at is None
    assert ("enable_user", "kc-gone") in keycloak.calls


@pytest.mark.asyncio
async def test_reactivation_not_sent_for_active_account(client, user, mailer):
    r = await client.post("/api/auth/reactivate-request", json={"email": user.email})
    assert r.status_code == 200
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_reactivation_expired_token_is_400(client, make_user, mailer, keycloak, db_session):
    gone = await make_user("kc-gone", "gone@example.com", deleted_at=utcnow())
    await client.post("/api/auth/reactivate-request", json={"email": gone.email})
    token = _token_from(mailer.sent[0])

    record = await db_session.get(AccountReactivationToken, split_token(token)[0])
    record.expires_at = utcnow() - timedelta(seconds=1)
    await db_session.commit()

    r = await client.post("/api/auth/reactivate-confirm", json={"token": token})
    assert r.status_code == 400
    assert gone.deleted_at is not None
    assert ("enable_user", "kc-gone") not in keycloak.calls


@pytest.mark.asyncio
async def test_reset_token_cannot_reactivate(client, user, mailer):
    await client.post("/api/auth/password-reset", json={"email": user.email})
    token = _token_from(mailer.sent[0])
    r = await client.post("/api/auth/reactivate-confirm", json={"token": token})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_reactivation_db_failure_disables_keycloak_again(
    db_session, make_user, keycloak, mailer, monkeypatch
):
    gone = await make_user("kc-gone", "gone@example.com", deleted_at=utcnow())
    service = AccountService(db_session, keycloak, mailer)
    token = await service.request_reactivation(gone.email)

    async def failing_commit():
        raise SQLAlchemyError("database went away")

    monkeypatch.setattr(db_session, "commit", failing_commit)
    with pytest.raises(SQLAlchemyError):
        await service.confirm_reactivation(token)
    monkeypatch.undo()

    assert keycloak.calls == [("enable_user", "kc-gone"), ("disable_user", "kc-gone")]
    await db_session.refresh(gone)
    assert gone.deleted_at is not None
    record = await db_session.get(AccountReactivationToken, split_token(token)[0])
    assert record.used_at is None
