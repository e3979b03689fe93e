from auth import issue_identity_token, resolve_user_id


def test_token_round_trip() -> None:
    token = issue_identity_token("user-a")
    assert resolve_user_id(token) == "user-a"


def test_tampered_token_is_rejected() -> None:
    token = issue_identity_token("user-a")
    tampered = ("x" if token[0] != "x" else "y") + token[1:]
    assert resolve_user_id(tampered) is None
    assert resolve_user_id("not-a-token") is None


def test_expired_token_is_rejected() -> None:
    token = issue_identity_token("user-a")
    assert resolve_user_id(token, max_age_secs=-1) is None
