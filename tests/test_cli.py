from payrecon.models import User
from conftest import roles_of, seed_subscriber


def test_admin_create(app):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["admin", "create", "--email", "Ops@Example.com", "--password", "pw-123456"])
    assert result.exit_code == 0
    assert "Admin created" in result.output
    with app.app_context():
        user = User.query.filter_by(email="ops@example.com").one()
        assert user.is_admin is True

    again = runner.invoke(args=["admin", "create", "--email", "ops@example.com", "--password", "x"])
    assert again.exit_code != 0
    assert "User already exists" in again.output


def test_billing_mode_never_prints_secrets(app):
    result = app.test_cli_runner().invoke(args=["billing", "mode"])
    assert result.exit_code == 0
    assert "mode=test" in result.output
    assert "secret_key=set" in result.output
    assert "sk_test_x" not in result.output
    assert "whsec_" not in result.output


def test_billing_sync(app, gateway):
    gateway.subscriptions["sub_9"] = {"id": "sub_9", "status": "canceled", "customer": "cus_9"}
    with app.app_context():
        uid = seed_subscriber()
    result = app.test_cli_runner().invoke(args=["billing", "sync", "--subscription-id", "sub_9"])
    assert result.exit_code == 0
    assert "active -> canceled" in result.output
    with app.app_context():
        assert roles_of(uid) == set()


def test_billing_sync_reports_provider_errors(app, gateway):
    result = app.test_cli_runner().invoke(args=["billing", "sync", "--subscription-id", "sub_missing"])
    assert result.exit_code != 0
    assert "provider_error" in result.output
