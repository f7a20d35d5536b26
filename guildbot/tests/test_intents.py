import pytest

from guildbot.intents import Intents


def test_default_excludes_privileged_intents():
    default = Intents.default()
    assert not default.has_privileged()
    assert Intents.GUILDS in default
    assert Intents.PUBLIC_GUILD_MESSAGES in default
    assert default | Intents.privileged() == Intents.all()


def test_parse_accepts_ints_names_and_iterables():
    assert Intents.parse(1) == Intents.GUILDS
    assert Intents.parse("513") == Intents.GUILDS | Intents.GUILD_MESSAGES
    assert Intents.parse("guilds | direct_message") == Intents.GUILDS | Intents.DIRECT_MESSAGE
    assert Intents.parse(["GUILDS", 1 << 25]) == Intents.GUILDS | Intents.PUBLIC_MESSAGES
    assert Intents.parse(Intents.FORUMS) is Intents.FORUMS


@pytest.mark.parametrize("value", [True, -1, 1 << 40, "NOT_AN_INTENT", 1.5])
def test_parse_rejects_bad_values(value):
    with pytest.raises(ValueError):
        Intents.parse(value)


def test_describe_lists_names():
    assert Intents.none().describe() == "Intents(NONE)"
    assert Intents.parse("GUILDS,GUILD_MEMBERS").describe() == "Intents(GUILDS | GUILD_MEMBERS)"
