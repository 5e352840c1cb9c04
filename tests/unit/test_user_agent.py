import pytest

from heartbeat_info.user_agent import DefaultUserAgentPublisher, LibraryVersion


def test_user_agent_joins_libraries_sorted_by_name() -> None:
    publisher = DefaultUserAgentPublisher.from_tokens(["fire-iid/21.0.0", "fire-core/20.3.0"])

    assert publisher.get_user_agent() == "fire-core/20.3.0 fire-iid/21.0.0"


def test_register_library_replaces_existing_version() -> None:
    publisher = DefaultUserAgentPublisher([LibraryVersion("fire-core", "20.3.0")])
    publisher.register_library("fire-core", "20.4.0")
    publisher.register_library("kotlin", "1.9.0")

    assert publisher.get_user_agent() == "fire-core/20.4.0 kotlin/1.9.0"


def test_empty_publisher_has_empty_user_agent() -> None:
    assert DefaultUserAgentPublisher().get_user_agent() == ""


@pytest.mark.parametrize("token", ["fire-core", "/1.0", "fire-core/", "a/b/c", "fire core/1.0"])
def test_library_version_rejects_malformed_tokens(token: str) -> None:
    with pytest.raises(ValueError):
        LibraryVersion.parse(token)
