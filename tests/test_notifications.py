import smtplib
from unittest.mock import MagicMock, patch

import pytest

from collision import models, notifications
from collision.database import db_session
from collision.notifications import EmailGateway, EmailNotConfigured, SMTPTransport


@pytest.fixture
def email_log(db, make_user, now):
    make_user(1)
    make_user(2, email="bob@example.com", email_verified=True)
    log = models.EmailLog(
        user_id=1,
        to_email="bob@example.com",
        subject="You have a new message",
        content="hello",
        status=notifications.STATUS_PENDING,
        attempts=0,
        created_at=now,
    )
    db.add(log)
    db.commit()
    return log.id


def _reload(db, log_id):
    db.expire_all()
    return db.get(models.EmailLog, log_id)


class TestEmailGateway:
    def test_sent_first_try(self, db, email_log, transport_factory):
        transport = transport_factory()
        sleeps = []
        gateway = EmailGateway(transport, sleep=sleeps.append)

        assert gateway.dispatch(email_log) == notifications.STATUS_SENT
        log = _reload(db, email_log)
        assert log.status == notifications.STATUS_SENT
        assert log.attempts == 1
        assert log.sent_at is not None
        assert transport.sent == [("bob@example.com", "You have a new message", "hello")]
        assert sleeps == []

    def test_retries_with_exponential_backoff(self, db, email_log, transport_factory):
        transport = transport_factory(failures=2, error=smtplib.SMTPServerDisconnected("gone"))
        sleeps = []
        gateway = EmailGateway(transport, max_retries=3, backoff_base=0.5, sleep=sleeps.append)

        assert gateway.dispatch(email_log) == notifications.STATUS_SENT
        assert sleeps == [0.5, 1.0]
        log = _reload(db, email_log)
        assert log.attempts == 3
        assert log.error_msg is None

    def test_gives_up_after_max_retries(self, db, email_log, transport_factory):
        transport = transport_factory(failures=10)
        sleeps = []
        gateway = EmailGateway(transport, max_retries=3, backoff_base=1, sleep=sleeps.append)

        assert gateway.dispatch(email_log) == notifications.STATUS_FAILED
        assert sleeps == [1, 2]
        log = _reload(db, email_log)
        assert log.status == notifications.STATUS_FAILED
        assert log.attempts == 3
        assert "connection refused" in log.error_msg

    def test_not_configured_fails_fast(self, db, email_log, transport_factory):
        transport = transport_factory(failures=1, error=EmailNotConfigured("no smtp"))
        gateway = EmailGateway(transport, max_retries=5, sleep=lambda s: None)

        assert gateway.dispatch(email_log) == notifications.STATUS_FAILED
        assert transport.calls == 1

    def test_already_sent_is_noop(self, db, email_log, transport_factory):
        transport = transport_factory()
        gateway = EmailGateway(transport, sleep=lambda s: None)
        gateway.dispatch(email_log)
        gateway.dispatch(email_log)
        assert transport.calls == 1

    def test_unknown_log(self, engine, transport_factory):
        gateway = EmailGateway(transport_factory(), sleep=lambda s: None)
        assert gateway.dispatch(12345) == notifications.STATUS_FAILED

    def test_delay_for(self, transport_factory):
        gateway = EmailGateway(transport_factory(), backoff_base=2)
        assert [gateway.delay_for(n) for n in (1, 2, 3)] == [2, 4, 8]

    def test_failure_leaves_match_alone(self, db, make_user, draft, now, transport_factory):
        from collision import codes, lifecycle

        make_user(1, coins=50)
        make_user(2, coins=50, email="bob@example.com", email_verified=True)
        codes.create(db, owner_id=1, draft=draft(), now=now)
        codes.create(db, owner_id=2, draft=draft(), now=now)
        match = db.query(models.Match).one()
        log = lifecycle.send_email(db, match_id=match.id, actor_id=1, content="hi", now=now)

        gateway = EmailGateway(transport_factory(failures=99), max_retries=2, sleep=lambda s: None)
        assert gateway.dispatch(log.id) == notifications.STATUS_FAILED

        db.expire_all()
        assert db.get(models.Match, match.id).email_sent is True
        assert db.get(models.User, 1).coins == 39

    def test_background_entry_never_raises(self, engine):
        broken = MagicMock()
        broken.dispatch.side_effect = RuntimeError("boom")
        notifications.set_gateway(broken)
        try:
            notifications.dispatch_in_background(1)
        finally:
            notifications.set_gateway(None)
        broken.dispatch.assert_called_once_with(1)


class TestSMTPTransport:
    def test_requires_host_and_username(self):
        transport = SMTPTransport(host=None, port=465)
        assert not transport.configured
        with pytest.raises(EmailNotConfigured):
            transport.send("bob@example.com", "s", "b")

    @patch("collision.notifications.smtplib.SMTP_SSL")
    def test_ssl_send(self, smtp_ssl):
        server = smtp_ssl.return_value.__enter__.return_value
        transport = SMTPTransport(
            host="smtp.example.com", port=465, username="noreply@example.com",
            password="pw", from_alias="Tag Collision", use_ssl=True,
        )
        transport.send("bob@example.com", "Subject", "Body")

        smtp_ssl.assert_called_once_with("smtp.example.com", 465, timeout=10)
        server.login.assert_called_once_with("noreply@example.com", "pw")
        message = server.send_message.call_args[0][0]
        assert message["To"] == "bob@example.com"
        assert message["Subject"] == "Subject"
        assert "noreply@example.com" in message["From"]

    @patch("collision.notifications.smtplib.SMTP")
    def test_starttls_send(self, smtp):
        server = smtp.return_value.__enter__.return_value
        transport = SMTPTransport(host="smtp.example.com", port=587, username="u", use_ssl=False)
        transport.send("bob@example.com", "Subject", "Body")
        server.starttls.assert_called_once_with()
        server.send_message.assert_called_once()


def test_db_session_commits(engine):
    with db_session() as db:
        db.add(models.User(id=77, coins=0, gender=0))
    with db_session() as db:
        assert db.get(models.User, 77) is not None
