"""Tests for NoteStore — libsql CRUD, tags and search."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from memoria.errors import NotFoundError
from memoria.notes.models import CreateNotePayload, EditNotePayload, NoteType, TagInput
from memoria.notes.search import SearchQuery
from memoria.notes.store import NoteStore

OWNER = "user_1"
OTHER = "user_2"


def _payload(content: str, *tags: str, **kwargs) -> CreateNotePayload:
    return CreateNotePayload(content=content, tags=[TagInput(tag_name=t) for t in tags], **kwargs)


def _at(day: int, hour: int = 12) -> datetime:
    return datetime(2024, 3, day, hour, tzinfo=UTC)


# -- create / get --------------------------------------------------------------


async def test_create_and_get(note_store: NoteStore) -> None:
    note = await note_store.create_note(_payload("Buy oat milk", "groceries"), OWNER)

    fetched = await note_store.get_note(note.id, OWNER)
    assert fetched.content == "Buy oat milk"
    assert fetched.type == NoteType.TEXT
    assert fetched.owner_id == OWNER
    assert fetched.tag_names == ["groceries"]
    assert fetched.embedded_at is None
    assert fetched.created_at == fetched.updated_at


async def test_author_alias(note_store: NoteStore) -> None:
    payload = CreateNotePayload.model_validate({"content": "hi", "from": "Ada"})
    note = await note_store.create_note(payload, OWNER)
    assert note.author == "Ada"
    assert note.model_dump(by_alias=True)["from"] == "Ada"


async def test_get_other_owners_note_is_not_found(note_store: NoteStore) -> None:
    note = await note_store.create_note(_payload("private"), OWNER)
    with pytest.raises(NotFoundError):
        await note_store.get_note(note.id, OTHER)


async def test_new_tag_gets_default_color(note_store: NoteStore) -> None:
    await note_store.create_note(_payload("x", "work"), OWNER)
    tags = await note_store.get_tags(OWNER)
    assert tags[0].color == "rgba(99, 102, 241, 0.5)"


# -- tags ----------------------------------------------------------------------


async def test_tag_names_are_case_insensitive(note_store: NoteStore) -> None:
    first = await note_store.create_note(_payload("one", "Work"), OWNER)
    second = await note_store.create_note(_payload("two", "work"), OWNER)

    tags = await note_store.get_tags(OWNER)
    assert len(tags) == 1
    assert tags[0].tag_name == "Work"
    assert first.tags[0].id == second.tags[0].id


async def test_duplicate_tags_in_one_payload_collapse(note_store: NoteStore) -> None:
    note = await note_store.create_note(_payload("x", "ideas", "IDEAS", " "), OWNER)
    assert note.tag_names == ["ideas"]


async def test_tags_are_per_owner(note_store: NoteStore) -> None:
    await note_store.create_note(_payload("mine", "work"), OWNER)
    await note_store.create_note(_payload("theirs", "work"), OTHER)

    mine = await note_store.get_tags(OWNER)
    theirs = await note_store.get_tags(OTHER)
    assert len(mine) == len(theirs) == 1
    assert mine[0].id != theirs[0].id


async def test_existing_tag_by_id(note_store: NoteStore) -> None:
    first = await note_store.create_note(_payload("one", "travel"), OWNER)
    tag_id = first.tags[0].id

    payload = CreateNotePayload(content="two", tags=[TagInput(tag_name="", id=tag_id)])
    second = await note_store.create_note(payload, OWNER)
    assert second.tags[0].id == tag_id


async def test_unknown_tag_id_raises(note_store: NoteStore) -> None:
    payload = CreateNotePayload(content="x", tags=[TagInput(tag_name="", id="missing")])
    with pytest.raises(NotFoundError):
        await note_store.create_note(payload, OWNER)
    assert await note_store.list_notes(OWNER) == []


# -- edit / delete -------------------------------------------------------------


async def test_edit_replaces_content_and_tags(note_store: NoteStore) -> None:
    note = await note_store.create_note(_payload("draft", "a", "b"), OWNER)
    await note_store.mark_embedded(note.id)

    edited = await note_store.edit_note(
        EditNotePayload(id=note.id, content="final", tags=[TagInput(tag_name="c")]),
        OWNER,
    )
    assert edited.content == "final"
    assert edited.tag_names == ["c"]
    assert edited.embedded_at is None
    assert edited.updated_at >= edited.created_at


async def test_edit_keeps_author_when_blank(note_store: NoteStore) -> None:
    note = await note_store.create_note(_payload("draft", author="Ada"), OWNER)
    edited = await note_store.edit_note(EditNotePayload(id=note.id, content="final"), OWNER)
    assert edited.author == "Ada"


async def test_edit_other_owner_raises(note_store: NoteStore) -> None:
    note = await note_store.create_note(_payload("draft"), OWNER)
    with pytest.raises(NotFoundError):
        await note_store.edit_note(EditNotePayload(id=note.id, content="hijack"), OTHER)
    assert (await note_store.get_note(note.id, OWNER)).content == "draft"


async def test_delete_returns_note(note_store: NoteStore) -> None:
    note = await note_store.create_note(_payload("bye", "x"), OWNER)
    deleted = await note_store.delete_note(note.id, OWNER)
    assert deleted.id == note.id
    with pytest.raises(NotFoundError):
        await note_store.get_note(note.id, OWNER)


async def test_delete_missing_raises(note_store: NoteStore) -> None:
    with pytest.raises(NotFoundError):
        await note_store.delete_note("nope", OWNER)


async def test_mark_embedded(note_store: NoteStore) -> None:
    note = await note_store.create_note(_payload("x"), OWNER)
    assert await note_store.mark_embedded(note.id) is True
    assert (await note_store.get_note(note.id, OWNER)).embedded_at is not None
    assert await note_store.mark_embedded("gone") is False


# -- list / search -------------------------------------------------------------


async def test_list_is_chronological(note_store: NoteStore) -> None:
    for day in (3, 1, 2):
        await note_store.create_note(_payload(f"day {day}"), OWNER, created_at=_at(day))

    notes = await note_store.list_notes(OWNER)
    assert [n.content for n in notes] == ["day 1", "day 2", "day 3"]


async def test_list_is_owner_scoped(note_store: NoteStore) -> None:
    await note_store.create_note(_payload("mine"), OWNER)
    await note_store.create_note(_payload("theirs"), OTHER)
    assert [n.content for n in await note_store.list_notes(OWNER)] == ["mine"]


async def test_pagination_newest_page_first(
    note_store: NoteStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("memoria.config.settings.page_size", 2)
    base = _at(1)
    for i in range(5):
        await note_store.create_note(_payload(f"n{i}"), OWNER, created_at=base + timedelta(hours=i))

    page1 = await note_store.list_notes(OWNER, page=1)
    page2 = await note_store.list_notes(OWNER, page=2)
    page3 = await note_store.list_notes(OWNER, page=3)
    assert [n.content for n in page1] == ["n3", "n4"]
    assert [n.content for n in page2] == ["n1", "n2"]
    assert [n.content for n in page3] == ["n0"]


async def test_free_text_is_case_insensitive(note_store: NoteStore) -> None:
    await note_store.create_note(_payload("Quarterly PLANNING session"), OWNER)
    await note_store.create_note(_payload("dentist"), OWNER)

    notes = await note_store.list_notes(OWNER, search="planning")
    assert [n.content for n in notes] == ["Quarterly PLANNING session"]


async def test_tag_filter_requires_all_tags(note_store: NoteStore) -> None:
    await note_store.create_note(_payload("N1", "work"), OWNER, created_at=_at(1))
    await note_store.create_note(_payload("N2", "work", "urgent"), OWNER, created_at=_at(2))
    await note_store.create_note(_payload("N3", "urgent"), OWNER, created_at=_at(3))

    both = await note_store.list_notes(OWNER, search="tag:work,urgent")
    assert [n.content for n in both] == ["N2"]

    work = await note_store.list_notes(OWNER, search="tag:WORK")
    assert [n.content for n in work] == ["N1", "N2"]


async def test_tag_filter_ignores_other_owners_tags(note_store: NoteStore) -> None:
    await note_store.create_note(_payload("mine", "work"), OWNER)
    await note_store.create_note(_payload("theirs", "work"), OTHER)
    notes = await note_store.list_notes(OWNER, search="tag:work")
    assert [n.content for n in notes] == ["mine"]


async def test_date_filters(note_store: NoteStore) -> None:
    await note_store.create_note(_payload("early"), OWNER, created_at=_at(1, 0))
    await note_store.create_note(_payload("middle"), OWNER, created_at=_at(15, 23))
    await note_store.create_note(_payload("late"), OWNER, created_at=_at(30))

    after = await note_store.list_notes(OWNER, search="after:2024-03-15")
    assert [n.content for n in after] == ["middle", "late"]

    before = await note_store.list_notes(OWNER, search="before:2024-03-15")
    assert [n.content for n in before] == ["early", "middle"]

    during = await note_store.list_notes(OWNER, search="during:2024-03-01")
    assert [n.content for n in during] == ["early"]


async def test_accepts_parsed_query(note_store: NoteStore) -> None:
    await note_store.create_note(_payload("alpha", "x"), OWNER)
    await note_store.create_note(_payload("beta", "x"), OWNER)
    notes = await note_store.list_notes(OWNER, search=SearchQuery(text="ALPHA", tags=["X"]))
    assert [n.content for n in notes] == ["alpha"]


# -- chat / backfill helpers ---------------------------------------------------


async def test_recent_chat_notes_newest_first(note_store: NoteStore) -> None:
    await note_store.create_note(_payload("plain"), OWNER, created_at=_at(1))
    await note_store.create_note(
        _payload("@chat hi", type=NoteType.PROMPT), OWNER, created_at=_at(2)
    )
    await note_store.create_note(_payload("hello", type=NoteType.CHAT), OWNER, created_at=_at(3))

    notes = await note_store.recent_chat_notes(OWNER, limit=10)
    assert [n.content for n in notes] == ["hello", "@chat hi"]

    limited = await note_store.recent_chat_notes(OWNER, limit=1)
    assert [n.content for n in limited] == ["hello"]


async def test_get_notes_by_ids_preserves_order(note_store: NoteStore) -> None:
    a = await note_store.create_note(_payload("a"), OWNER)
    b = await note_store.create_note(_payload("b"), OWNER)
    c = await note_store.create_note(_payload("c"), OTHER)

    notes = await note_store.get_notes_by_ids([b.id, "missing", a.id, c.id], OWNER)
    assert [n.id for n in notes] == [b.id, a.id]
    assert await note_store.get_notes_by_ids([], OWNER) == []


async def test_list_unembedded_skips_prompts(note_store: NoteStore) -> None:
    text = await note_store.create_note(_payload("text"), OWNER, created_at=_at(1))
    done = await note_store.create_note(_payload("done"), OWNER, created_at=_at(2))
    await note_store.create_note(_payload("@chat q", type=NoteType.PROMPT), OWNER)
    other = await note_store.create_note(_payload("other"), OTHER, created_at=_at(3))
    await note_store.mark_embedded(done.id)

    assert [n.id for n in await note_store.list_unembedded(OWNER)] == [text.id]
    assert [n.id for n in await note_store.list_unembedded()] == [text.id, other.id]


async def test_free_text_folds_non_ascii(note_store: NoteStore) -> None:
    await note_store.create_note(_payload("Über den Wolken"), OWNER)
    await note_store.create_note(_payload("Straße nach Köln"), OWNER)

    for text in ("Über", "über", "ÜBER den"):
        notes = await note_store.list_notes(OWNER, search=text)
        assert [n.content for n in notes] == ["Über den Wolken"]

    notes = await note_store.list_notes(OWNER, search="STRASSE")
    assert [n.content for n in notes] == ["Straße nach Köln"]


async def test_edit_refreshes_searchable_text(note_store: NoteStore) -> None:
    note = await note_store.create_note(_payload("Café plans"), OWNER)
    await note_store.edit_note(EditNotePayload(id=note.id, content="Tea plans"), OWNER)

    assert await note_store.list_notes(OWNER, search="café") == []
    assert [n.content for n in await note_store.list_notes(OWNER, search="TEA")] == ["Tea plans"]


async def test_tag_filter_folds_non_ascii(note_store: NoteStore) -> None:
    await note_store.create_note(_payload("trip", "Übung"), OWNER, created_at=_at(1))
    await note_store.create_note(_payload("other", "work"), OWNER, created_at=_at(2))

    for search in ("tag:Übung", "tag:übung", "tag:ÜBUNG"):
        notes = await note_store.list_notes(OWNER, search=search)
        assert [n.content for n in notes] == ["trip"]


async def test_tag_filter_with_unknown_tag_is_empty(note_store: NoteStore) -> None:
    await note_store.create_note(_payload("N1", "work"), OWNER)

    assert await note_store.list_notes(OWNER, search="tag:nope") == []
    assert await note_store.list_notes(OWNER, search="tag:work,nope") == []


async def test_free_text_wildcards_are_literal(note_store: NoteStore) -> None:
    for content in ("axb", "a_b", "50% off", "500 off", r"C:\temp"):
        await note_store.create_note(_payload(content), OWNER)

    assert [n.content for n in await note_store.list_notes(OWNER, search="a_b")] == ["a_b"]
    assert [n.content for n in await note_store.list_notes(OWNER, search="50%")] == ["50% off"]
    assert [n.content for n in await note_store.list_notes(OWNER, search="%")] == ["50% off"]
    assert [n.content for n in await note_store.list_notes(OWNER, search=r"c:\temp")] == [
        r"C:\temp"
    ]


async def test_new_tag_reuses_row_created_by_concurrent_writer(note_store: NoteStore) -> None:
    first = await note_store.create_note(_payload("one", "Launch"), OWNER)

    # the owner's tag list was read before the other writer committed
    with patch.object(note_store, "_owner_tags", AsyncMock(return_value=[])):
        second = await note_store.create_note(_payload("two", "launch"), OWNER)

    assert second.tags[0].id == first.tags[0].id
    tags = await note_store.get_tags(OWNER)
    assert [t.tag_name for t in tags] == ["Launch"]
