from datetime import date, datetime

import pytest

from chatsync.services.conversation_directory import (
    CREW,
    CREW_DATE,
    DIRECT,
    ConversationRef,
    conversation_id_for,
    crew_date_conversation_id,
    crew_id_from_date_chat,
    direct_conversation_id,
    other_participant,
    participants_of,
)


class TestConversationIdFor:
    def test_sorted_and_joined(self):
        assert conversation_id_for(["zed", "amy"]) == "amy_zed"

    def test_commutative(self):
        assert direct_conversation_id("u1", "u2") == direct_conversation_id("u2", "u1")

    def test_duplicates_collapse(self):
        assert conversation_id_for(["a", "b", "a"]) == "a_b"

    def test_needs_two_distinct(self):
        with pytest.raises(ValueError):
            conversation_id_for(["a", "a"])

    def test_rejects_empty_id(self):
        with pytest.raises(ValueError):
            direct_conversation_id("a", " ")


class TestCrewDateIds:
    def test_from_string(self):
        assert crew_date_conversation_id("crew1", "2024-05-01") == "crew1_2024-05-01"

    def test_from_date_and_datetime(self):
        assert crew_date_conversation_id("c", date(2024, 5, 1)) == "c_2024-05-01"
        assert crew_date_conversation_id("c", datetime(2024, 5, 1, 23, 59)) == "c_2024-05-01"

    def test_rejects_bad_date(self):
        with pytest.raises(ValueError):
            crew_date_conversation_id("c", "yesterday")

    def test_crew_id_recovered_with_underscores(self):
        assert crew_id_from_date_chat("my_crew_2024-05-01") == "my_crew"


class TestParticipants:
    def test_participants_of(self):
        assert participants_of("a_b") == ["a", "b"]

    def test_other_participant(self):
        assert other_participant("a_b", "a") == "b"
        assert other_participant("a_b", "b") == "a"


class TestConversationRef:
    def test_direct(self):
        ref = ConversationRef.direct("bob", "alice")
        assert ref.id == "alice_bob"
        assert ref.kind == DIRECT
        assert ref.participants == ("alice", "bob")

    def test_crew(self):
        ref = ConversationRef.crew("crew9")
        assert (ref.id, ref.kind, ref.crew_id) == ("crew9", CREW, "crew9")

    def test_crew_date(self):
        ref = ConversationRef.crew_date("crew9", "2024-07-04")
        assert ref.id == "crew9_2024-07-04"
        assert ref.kind == CREW_DATE
        assert ref.crew_id == "crew9"
