"""
tests/test_ownership.py
"""
from __future__ import annotations

from urllib.parse import urlparse

from personalweb.blog import Author, Identity, Post, get_store, is_owner

CSRF = "test-token"


def _login(client, user) -> None:
    with client.session_transaction() as sess:
        sess["user_id"] = user.id
        sess["username"] = user.username
        sess["csrf"] = CSRF


def _owned_post(user, title="Owned"):
    return get_store().posts.create(
        {"title": title, "body": "original"}, author=Author(user.id, user.username)
    )


def _flashes(client) -> list[tuple[str, str]]:
    with client.session_transaction() as sess:
        return list(sess.get("_flashes", []))


# ───────────────────────── predicate ──────────────────────────────────
def test_is_owner_compares_plain_ids():
    post = Post(id="p", title="", body="", created=None, author=Author("u1", "a"))
    assert is_owner(Identity(user_id="u1", username="whatever"), post)
    assert not is_owner(Identity(user_id="u2", username="a"), post)
    assert not is_owner(None, post)


def test_is_owner_rejects_authorless_posts():
    post = Post(id="p", title="", body="", created=None, author=None)
    assert not is_owner(Identity(user_id="u1", username="a"), post)


# ───────────────────────── routes ─────────────────────────────────────
def test_owner_gets_edit_form(client, make_user):
    owner = make_user()
    post = _owned_post(owner)
    _login(client, owner)

    rv = client.get(f"/blogs/{post.id}/edit")
    assert rv.status_code == 200
    assert b"original" in rv.data


def test_other_user_is_turned_away_everywhere(client, make_user):
    owner, other = make_user(), make_user()
    post = _owned_post(owner)
    _login(client, other)

    edit = client.get(f"/blogs/{post.id}/edit")
    assert edit.status_code == 302
    assert ("error", "You do not have permission to do that.") in _flashes(client)

    put = client.put(
        f"/blogs/{post.id}",
        data={"blog[title]": "hijacked", "csrf": CSRF},
    )
    delete = client.delete(f"/blogs/{post.id}", data={"csrf": CSRF})
    assert put.status_code == delete.status_code == 302

    # guard rejected without touching the record
    still = get_store().posts.find_by_id(post.id)
    assert still.title == "Owned"
    assert still.body == "original"


def test_anonymous_rejected_like_a_stranger(client, make_user):
    owner, other = make_user(), make_user()
    post = _owned_post(owner)
    back = {"Referer": f"http://localhost/blogs/{post.id}"}

    anon = client.get(f"/blogs/{post.id}/edit", headers=back)
    anon_flashes = _flashes(client)

    _login(client, other)
    # drop what the anonymous attempt queued
    client.get("/blogs")
    stranger = client.get(f"/blogs/{post.id}/edit", headers=back)

    assert anon.status_code == stranger.status_code == 302
    assert anon.headers["Location"] == stranger.headers["Location"]
    assert urlparse(anon.headers["Location"]).path == f"/blogs/{post.id}"
    assert anon_flashes == _flashes(client)


def test_authorless_post_cannot_be_edited(client, make_user):
    user = make_user()
    post = get_store().posts.create({"title": "legacy", "body": "old data"})
    _login(client, user)

    rv = client.put(
        f"/blogs/{post.id}", data={"blog[title]": "mine now", "csrf": CSRF}
    )
    assert rv.status_code == 302
    assert get_store().posts.find_by_id(post.id).title == "legacy"


def test_missing_post_redirects_back(client, make_user):
    _login(client, make_user())
    rv = client.get(
        "/blogs/nope/edit", headers={"Referer": "http://localhost/blogs?page=2"}
    )
    assert rv.status_code == 302
    assert rv.headers["Location"] == "http://localhost/blogs?page=2"


def test_foreign_referrer_is_not_followed(client, make_user):
    owner, other = make_user(), make_user()
    post = _owned_post(owner)
    _login(client, other)

    rv = client.get(
        f"/blogs/{post.id}/edit", headers={"Referer": "https://evil.example/x"}
    )
    assert rv.status_code == 302
    assert urlparse(rv.headers["Location"]).path == "/blogs"
    assert "evil.example" not in rv.headers["Location"]


def test_owner_can_update_and_delete(client, make_user):
    owner = make_user()
    post = _owned_post(owner)
    _login(client, owner)

    rv = client.put(
        f"/blogs/{post.id}", data={"blog[body]": "edited", "csrf": CSRF}
    )
    assert urlparse(rv.headers["Location"]).path == f"/blogs/{post.id}"
    assert get_store().posts.find_by_id(post.id).body == "edited"

    rv = client.delete(f"/blogs/{post.id}", data={"csrf": CSRF})
    assert urlparse(rv.headers["Location"]).path == "/blogs"
    assert client.get(f"/blogs/{post.id}").status_code == 302
