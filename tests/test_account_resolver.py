import logging
import threading

import pytest
from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from apps.auth.errors import AccountCreateRaceUnresolved, AccountLookupFailed
from apps.auth.models import Provider, User
from apps.auth.services import AccountResolver
from conftest import make_claims


def all_users(db):
    with db.session() as session:
        return session.exec(select(User)).all()


def make_resolver(db):
    return AccountResolver(db, admin_group_id="admin-group", admin_emails=["boss@example.com"])


def test_first_login_creates_unpaid_coach(db):
    user = make_resolver(db).resolve(make_claims(first_name="Ana", last_name="Lima"))

    assert user.role == "coach"
    assert user.subscription_status == "unpaid"
    assert user.google_account_id == "google-sub-1"
    assert user.azure_ad_id is None
    assert user.first_name == "Ana"
    assert len(all_users(db)) == 1


def test_repeat_login_returns_the_same_row(db):
    resolver = make_resolver(db)
    first = resolver.resolve(make_claims())
    second = resolver.resolve(make_claims())

    assert first.id == second.id
    assert len(all_users(db)) == 1


def test_entra_login_also_writes_legacy_column(db):
    user = make_resolver(db).resolve(make_claims(provider=Provider.ENTRA, provider_id="entra-oid-1"))

    assert user.entra_account_id == "entra-oid-1"
    assert user.azure_ad_id == "entra-oid-1"


def test_legacy_column_still_matches(db):
    with db.session() as session:
        session.add(User(id="11111111-1111-4111-8111-111111111111", email="old@example.com", azure_ad_id="entra-oid-9"))
        session.commit()

    user = make_resolver(db).resolve(
        make_claims(provider=Provider.ENTRA, provider_id="entra-oid-9", email="old@example.com")
    )

    assert user.id == "11111111-1111-4111-8111-111111111111"
    assert user.entra_account_id == "entra-oid-9"
    assert len(all_users(db)) == 1


def test_second_provider_links_by_email_case_insensitively(db):
    resolver = make_resolver(db)
    google_user = resolver.resolve(make_claims(email="Coach@Example.com"))
    microsoft_user = resolver.resolve(
        make_claims(provider=Provider.MICROSOFT, provider_id="msa-oid-1", email="coach@example.com")
    )

    assert microsoft_user.id == google_user.id
    assert microsoft_user.google_account_id == "google-sub-1"
    assert microsoft_user.microsoft_account_id == "msa-oid-1"
    assert microsoft_user.azure_ad_id == "msa-oid-1"
    assert len(all_users(db)) == 1


def test_different_emails_stay_separate(db):
    resolver = make_resolver(db)
    resolver.resolve(make_claims(email="one@example.com"))
    resolver.resolve(make_claims(provider=Provider.APPLE, provider_id="apple-1", email="two@example.com"))

    assert len(all_users(db)) == 2


def test_admin_email_creates_active_admin(db):
    user = make_resolver(db).resolve(make_claims(email="Boss@example.com"))

    assert user.role == "admin"
    assert user.subscription_status == "active"


def test_admin_promotion_and_demotion(db):
    resolver = make_resolver(db)
    user = resolver.resolve(make_claims(provider=Provider.ENTRA, provider_id="entra-oid-2"))
    assert (user.role, user.subscription_status) == ("coach", "unpaid")

    promoted = resolver.resolve(
        make_claims(provider=Provider.ENTRA, provider_id="entra-oid-2", groups=["admin-group"])
    )
    assert promoted.role == "admin"

    demoted = resolver.resolve(make_claims(provider=Provider.ENTRA, provider_id="entra-oid-2"))
    assert demoted.id == user.id
    assert (demoted.role, demoted.subscription_status) == ("coach", "unpaid")


def test_demotion_fills_missing_status_with_unpaid(db):
    with db.session() as session:
        session.add(User(email="former@example.com", role="admin", subscription_status=None, google_account_id="g-7"))
        session.commit()

    user = make_resolver(db).resolve(make_claims(provider_id="g-7", email="former@example.com"))

    assert user.role == "coach"
    assert user.subscription_status == "unpaid"


def test_name_backfill_never_overwrites(db):
    resolver = make_resolver(db)
    resolver.resolve(make_claims(first_name="", last_name=""))

    filled = resolver.resolve(make_claims(first_name="Ana", last_name="Lima"))
    assert (filled.first_name, filled.last_name) == ("Ana", "Lima")

    kept = resolver.resolve(make_claims(first_name="Someone", last_name="Else"))
    assert (kept.first_name, kept.last_name) == ("Ana", "Lima")


def test_email_link_points_provider_column_at_the_new_account(db):
    resolver = make_resolver(db)
    resolver.resolve(make_claims(provider_id="google-sub-1"))
    user = resolver.resolve(make_claims(provider_id="google-sub-2"))

    assert user.google_account_id == "google-sub-2"
    assert len(all_users(db)) == 1


def test_find_never_creates(db):
    resolver = make_resolver(db)

    assert resolver.find(make_claims()) is None
    assert all_users(db) == []

    created = resolver.resolve(make_claims())
    assert resolver.find(make_claims(provider_id="other", email="COACH@example.com")).id == created.id


def test_guarded_insert_returns_existing_row_when_race_is_lost(db):
    resolver = make_resolver(db)
    winner = resolver.resolve(make_claims())

    with db.session() as session:
        loser = resolver._create(session, make_claims())

    assert loser.id == winner.id
    assert len(all_users(db)) == 1


def test_concurrent_first_logins_create_one_row(db):
    resolver = make_resolver(db)
    barrier = threading.Barrier(4)
    results, errors = [], []

    def login():
        barrier.wait()
        try:
            results.append(resolver.resolve(make_claims()).id)
        except Exception as exc:  # surfaced through the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=login) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(set(results)) == 1
    with db.session() as session:
        assert session.exec(select(func.count()).select_from(User)).one() == 1


def test_store_failure_is_classified(db, monkeypatch):
    resolver = make_resolver(db)

    def broken_first(session, condition):
        raise OperationalError("SELECT", {}, Exception("connection timed out"))

    monkeypatch.setattr(resolver, "_first", broken_first)

    with pytest.raises(AccountLookupFailed) as excinfo:
        resolver.resolve(make_claims())
    assert excinfo.value.retryable is True
    assert excinfo.value.status_code == 500


def test_lost_race_without_a_visible_row_is_critical(db, monkeypatch, caplog):
    with db.session() as session:
        session.add(User(email="coach@example.com", google_account_id="google-sub-1"))
        session.commit()
    resolver = make_resolver(db)
    # The guarded insert sees the row, every read afterwards misses it
    monkeypatch.setattr(resolver, "_first", lambda session, condition: None)

    with caplog.at_level(logging.CRITICAL, logger="apps.auth.services"):
        with pytest.raises(AccountCreateRaceUnresolved) as excinfo:
            resolver.resolve(make_claims())

    assert excinfo.value.status_code == 500
    assert excinfo.value.to_body()["details"] == "Failed to load user after concurrent creation"
    assert any(
        record.levelno == logging.CRITICAL and record.name == "apps.auth.services"
        for record in caplog.records
    )
    assert len(all_users(db)) == 1
