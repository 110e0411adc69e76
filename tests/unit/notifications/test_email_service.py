from unittest.mock import ANY, patch

import pytest
from pydantic import SecretStr
from pydantic import ValidationError as PydanticValidationError

from cloudrecon.modules.notifications.domain.email_service import EmailMessage, EmailService
from cloudrecon.shared.core.config import Settings
from cloudrecon.shared.core.exceptions import ConfigurationError, TransportError


@pytest.fixture
def email_service():
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="user",
        smtp_password="password",
        from_email="alerts@cloudrecon.local",
    )


@pytest.mark.asyncio
async def test_send_email_uses_starttls(email_service):
    with patch("smtplib.SMTP") as mock_smtp:
        mock_server = mock_smtp.return_value.__enter__.return_value

        await email_service.send_email(["ops@example.com"], "Deletion alert", "30 resources deleted")

        mock_smtp.assert_called_once_with("smtp.example.com", 587, timeout=30.0)
        mock_server.starttls.assert_called_once()
        mock_server.login.assert_called_once_with("user", "password")
        mock_server.sendmail.assert_called_once_with(
            "alerts@cloudrecon.local", ["ops@example.com"], ANY
        )
        payload = mock_server.sendmail.call_args.args[2]
        assert "Subject: Deletion alert" in payload


@pytest.mark.asyncio
async def test_port_465_uses_implicit_tls():
    service = EmailService("smtp.example.com", 465, None, None, "alerts@cloudrecon.local")
    with patch("smtplib.SMTP_SSL") as mock_ssl, patch("smtplib.SMTP") as mock_plain:
        mock_server = mock_ssl.return_value.__enter__.return_value
        await service.send(EmailMessage(to=["ops@example.com"], subject="hi"))

        mock_plain.assert_not_called()
        mock_server.login.assert_not_called()
        mock_server.sendmail.assert_called_once()


@pytest.mark.asyncio
async def test_delivery_failure_raises_transport_error(email_service):
    with patch("smtplib.SMTP", side_effect=OSError("Connection refused")):
        with pytest.raises(TransportError) as exc:
            await email_service.send_email(["ops@example.com"], "subject", "body")
    assert "Connection refused" in exc.value.message


def test_message_accepts_comma_separated_recipients():
    message = EmailMessage(to="a@example.com, b@example.org", subject="s")
    assert message.to == ["a@example.com", "b@example.org"]


@pytest.mark.parametrize(
    "params",
    [
        {"to": [], "subject": "s"},
        {"to": ["not-an-address"], "subject": "s"},
        {"to": ["a@example.com"], "subject": "line\nBcc: victim@example.com"},
    ],
)
def test_message_validation(params):
    with pytest.raises(PydanticValidationError):
        EmailMessage(**params)


def test_from_settings():
    settings = Settings(
        _env_file=None,
        SMTP_HOST="smtp.example.com",
        SMTP_PORT=2525,
        SMTP_USER="bot",
        SMTP_PASSWORD=SecretStr("pw"),
        SMTP_USE_TLS=False,
    )
    service = EmailService.from_settings(settings)
    assert (service.smtp_port, service.smtp_password, service.use_tls) == (2525, "pw", False)

    with pytest.raises(ConfigurationError):
        EmailService.from_settings(Settings(_env_file=None, SMTP_HOST=None))
