import re

from hyperfetch.keys import (
    encode_query,
    fill_params,
    get_abort_key,
    get_request_key,
    join_url,
    key_matches,
    matching_keys,
    missing_params,
    pattern_to_str,
)


def test_fill_params_substitutes_known_and_keeps_missing() -> None:
    assert fill_params("/users/:id/posts/:postId", {"id": 7}) == "/users/7/posts/:postId"
    assert fill_params("/users/:id", None) == "/users/:id"
    assert missing_params("/users/7/posts/:postId") == ["postId"]
    assert missing_params("/users/7") == []


def test_encode_query_is_stable_and_skips_none() -> None:
    assert encode_query(None) == ""
    assert encode_query("?page=2") == "page=2"
    assert encode_query({"page": 2, "q": None, "active": True}) == "page=2&active=true"
    assert encode_query({"ids": [1, 2]}) == "ids=1&ids=2"


def test_key_builders() -> None:
    assert join_url("http://api.test", "/users", "page=2") == "http://api.test/users?page=2"
    assert join_url("http://api.test", "/users") == "http://api.test/users"
    assert get_request_key("GET", "http://api.test", "/users", "page=2") == (
        "GET_http://api.test/users_page=2"
    )
    assert get_abort_key("POST", "http://api.test", "/users", True) == (
        "POST_http://api.test/users_True"
    )


def test_pattern_matching_forms() -> None:
    assert key_matches("GET_http://api.test/users_", "GET_http://api.test/users_")
    assert not key_matches("users", "GET_http://api.test/users_")
    assert key_matches("/users/", "GET_http://api.test/users_")
    assert key_matches(re.compile(r"posts_$"), "GET_http://api.test/posts_")


def test_matching_keys_returns_each_key_once() -> None:
    keys = ["GET_/users/1_", "GET_/users/2_", "GET_/posts_"]

    matched = matching_keys(["/users/", re.compile("users/1"), "GET_/users/1_"], keys)

    assert matched == ["GET_/users/1_", "GET_/users/2_"]


def test_pattern_to_str_round_trips_through_matcher() -> None:
    pattern = pattern_to_str(re.compile(r"users/\d+"))

    assert pattern == r"/users/\d+/"
    assert key_matches(pattern, "GET_/users/12_")
