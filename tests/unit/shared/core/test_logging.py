from cloudrecon.shared.core.logging import email_masker, secret_redactor, setup_logging


def test_secret_redactor_masks_nested_secrets():
    event = {
        "event": "user_created",
        "temporary_password": "Xy9!secret",
        "payload": {"client_secret": "abc", "name": "ok", "items": [{"api_key": "k"}]},
    }
    redacted = secret_redactor(None, "info", event)
    assert redacted["temporary_password"] == "[REDACTED]"
    assert redacted["payload"]["client_secret"] == "[REDACTED]"
    assert redacted["payload"]["items"][0]["api_key"] == "[REDACTED]"
    assert redacted["payload"]["name"] == "ok"


def test_email_masker_only_touches_error_text():
    event = {"error": "mailbox ops@example.com unavailable", "recipients": ["ops@example.com"]}
    masked = email_masker(None, "error", event)
    assert masked["error"] == "mailbox [EMAIL_REDACTED] unavailable"
    assert masked["recipients"] == ["ops@example.com"]


def test_setup_logging_writes_json_to_stderr(capsys):
    import structlog

    setup_logging(verbose=False)
    structlog.get_logger().info("probe_event", resource_id="r1", password="hunter2")

    captured = capsys.readouterr()
    assert captured.out == ""
    assert '"event": "probe_event"' in captured.err
    assert "hunter2" not in captured.err
