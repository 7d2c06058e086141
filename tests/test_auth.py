from __future__ import annotations

import pytest

from conftest import ManualTimer, make_settings
from vault_client.auth import (
    ALREADY_IN_PROGRESS_MESSAGE,
    CANCELLED_MESSAGE,
    TAB_FAILED_MESSAGE,
    TIMED_OUT_MESSAGE,
    AuthenticationError,
    OAuthFlowCoordinator,
    parse_callback_fragment,
)

CALLBACK = "https://app.context-vault.com/auth/callback"


@pytest.fixture
def timers() -> list[ManualTimer]:
    return []


@pytest.fixture
def coordinator(browser_host, timers) -> OAuthFlowCoordinator:
    def timer_factory(interval, function):
        timer = ManualTimer(interval, function)
        timers.append(timer)
        return timer

    return OAuthFlowCoordinator(make_settings(), browser_host, timer_factory=timer_factory)


def assert_torn_down(coordinator, browser_host, timers):
    assert not coordinator.is_pending
    assert browser_host.updated_listeners == []
    assert browser_host.removed_listeners == []
    assert all(timer.cancelled for timer in timers)


def test_start_opens_tab_and_arms_deadline(coordinator, browser_host, timers):
    future = coordinator.start_sign_in()

    assert not future.done()
    assert coordinator.is_pending
    assert browser_host.created == ["https://api.context-vault.com/api/auth/google"]
    assert timers[0].interval == 300.0
    assert timers[0].started
    assert len(browser_host.updated_listeners) == 1
    assert len(browser_host.removed_listeners) == 1


def test_second_start_is_rejected_without_opening_a_tab(coordinator, browser_host):
    coordinator.start_sign_in()

    with pytest.raises(AuthenticationError, match="already in progress") as excinfo:
        coordinator.start_sign_in()

    assert str(excinfo.value) == ALREADY_IN_PROGRESS_MESSAGE
    assert len(browser_host.created) == 1


def test_callback_resolves_with_fragment_credentials_and_closes_tab(coordinator, browser_host, timers):
    future = coordinator.start_sign_in()
    tab_id = browser_host.next_tab_id

    browser_host.fire_updated(tab_id, f"{CALLBACK}#token=abc123&encryption_secret=xyz")

    result = future.result(timeout=1)
    assert result.api_key == "abc123"
    assert result.encryption_secret == "xyz"
    assert browser_host.removed == [tab_id]
    assert_torn_down(coordinator, browser_host, timers)


def test_credentials_in_query_string_are_ignored(coordinator, browser_host):
    future = coordinator.start_sign_in()

    browser_host.fire_updated(browser_host.next_tab_id, f"{CALLBACK}?token=leaked")

    result = future.result(timeout=1)
    assert result.api_key == ""
    assert result.encryption_secret is None


def test_callback_without_token_resolves_with_empty_credential(coordinator, browser_host):
    future = coordinator.start_sign_in()

    browser_host.fire_updated(browser_host.next_tab_id, f"{CALLBACK}#error=access_denied")

    assert future.result(timeout=1).api_key == ""


@pytest.mark.parametrize(
    "url",
    [
        "https://accounts.google.com/o/oauth2/auth?x=1",
        "https://app.context-vault.com/dashboard#token=abc",
        "https://evil.example.com/auth/callback#token=abc",
        "",
    ],
)
def test_other_navigations_are_ignored(coordinator, browser_host, url):
    future = coordinator.start_sign_in()

    browser_host.fire_updated(browser_host.next_tab_id, url)

    assert not future.done()
    assert coordinator.is_pending
    assert browser_host.removed == []


def test_navigation_in_an_unrelated_tab_is_ignored(coordinator, browser_host):
    future = coordinator.start_sign_in()

    browser_host.fire_updated(browser_host.next_tab_id + 7, f"{CALLBACK}#token=abc")

    assert not future.done()


def test_closing_the_tab_cancels_and_frees_the_slot(coordinator, browser_host, timers):
    future = coordinator.start_sign_in()

    browser_host.fire_removed(browser_host.next_tab_id)

    with pytest.raises(AuthenticationError, match=CANCELLED_MESSAGE):
        future.result(timeout=1)
    assert browser_host.removed == []
    assert_torn_down(coordinator, browser_host, timers)

    coordinator.start_sign_in()
    assert len(browser_host.created) == 2


def test_deadline_rejects_closes_tab_and_frees_the_slot(coordinator, browser_host, timers):
    future = coordinator.start_sign_in()
    tab_id = browser_host.next_tab_id

    timers[0].fire()

    with pytest.raises(AuthenticationError, match="timed out") as excinfo:
        future.result(timeout=1)
    assert str(excinfo.value) == TIMED_OUT_MESSAGE
    assert browser_host.removed == [tab_id]
    assert_torn_down(coordinator, browser_host, timers)

    coordinator.start_sign_in()
    assert len(browser_host.created) == 2


def test_tab_creation_failure_rejects(coordinator, browser_host, timers):
    browser_host.create_fails = True

    future = coordinator.start_sign_in()

    with pytest.raises(AuthenticationError, match=TAB_FAILED_MESSAGE):
        future.result(timeout=1)
    assert browser_host.removed == []
    assert_torn_down(coordinator, browser_host, timers)


def test_late_events_after_resolution_are_no_ops(coordinator, browser_host):
    future = coordinator.start_sign_in()
    tab_id = browser_host.next_tab_id
    update_listener = browser_host.updated_listeners[0]
    removed_listener = browser_host.removed_listeners[0]

    update_listener(tab_id, f"{CALLBACK}#token=first")
    removed_listener(tab_id)
    update_listener(tab_id, f"{CALLBACK}#token=second")

    assert future.result(timeout=1).api_key == "first"
    assert browser_host.removed == [tab_id]


def test_stale_listener_does_not_touch_a_newer_flow(coordinator, browser_host):
    first = coordinator.start_sign_in()
    stale_removed = browser_host.removed_listeners[0]
    browser_host.fire_removed(browser_host.next_tab_id)
    assert first.exception(timeout=1) is not None

    second = coordinator.start_sign_in()
    stale_removed(browser_host.next_tab_id)

    assert not second.done()
    assert coordinator.is_pending


def test_cancel_rejects_pending_flow(coordinator, browser_host, timers):
    future = coordinator.start_sign_in()

    assert coordinator.cancel() is True
    assert coordinator.cancel() is False

    with pytest.raises(AuthenticationError, match=CANCELLED_MESSAGE):
        future.result(timeout=1)
    assert browser_host.removed == [browser_host.next_tab_id]
    assert_torn_down(coordinator, browser_host, timers)


def test_parse_callback_fragment_decodes_values():
    result = parse_callback_fragment(f"{CALLBACK}#token=a%2Bb&encryption_secret=")

    assert result.api_key == "a+b"
    assert result.encryption_secret is None
