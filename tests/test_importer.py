import io

import pytest

from catalog import CatalogError
from importer import ImportFormatError, import_albums, import_file, parse_line, read_rows


def _upload(text, encoding="utf-8"):
    return io.BytesIO(text.encode(encoding))


def test_parse_line():
    assert parse_line("Miles Davis, Kind of Blue") == ("Miles Davis", "Kind of Blue")
    assert parse_line("A,B,1959,extra") == ("A", "B")
    assert parse_line("only one field") is None
    assert parse_line("") is None
    assert parse_line("   ") is None
    # Two fields, even if empty, is still a row
    assert parse_line(",") == ("", "")


def test_three_line_import_numbers_rows_in_file_order(catalog):
    albums = import_file(catalog, _upload("A,B\nC,D\nE,F"), "x", 1999)
    assert len(albums) == 3

    stored = catalog.list_albums(owner="x")
    assert [(a.local_id, a.artist, a.title) for a in stored] == [(1, "A", "B"), (2, "C", "D"), (3, "E", "F")]
    for album in stored:
        assert album.owner == "x"
        assert album.release_year == 1999
        assert album.cover_file_name is None
        assert album.lent_to is None


def test_import_continues_after_existing_albums(catalog):
    catalog.create_album(title="T1", artist="A1", release_year=2000, owner="x")
    catalog.create_album(title="T2", artist="A2", release_year=2000, owner="x")
    catalog.create_album(title="Other", artist="O", release_year=2000, owner="y")

    import_file(catalog, _upload("C,D\nE,F\n"), "x", 2010)
    assert [a.local_id for a in catalog.list_albums(owner="x")] == [1, 2, 3, 4]
    assert [a.local_id for a in catalog.list_albums(owner="y")] == [1]


def test_import_skips_blank_and_short_lines(catalog):
    text = "\n  \nA,B\njust a title\n\r\nC,D,ignored,fields\n"
    albums = import_file(catalog, _upload(text), "x", 2000)
    assert [(a.local_id, a.artist, a.title) for a in albums] == [(1, "A", "B"), (2, "C", "D")]


def test_import_handles_crlf_and_bom(catalog):
    text = "\ufeffA, B \r\nC ,D\r\n"
    albums = import_file(catalog, _upload(text), "x", 2000)
    assert [(a.artist, a.title) for a in albums] == [("A", "B"), ("C", "D")]


def test_import_accepts_odd_values_as_is(catalog):
    albums = import_file(catalog, _upload("1234,not a year\n"), "x", 2000)
    assert (albums[0].artist, albums[0].title, albums[0].release_year) == ("1234", "not a year", 2000)


def test_import_rejects_blank_owner(catalog):
    with pytest.raises(ValueError):
        import_file(catalog, _upload("A,B"), "  ", 2000)


def test_import_rejects_undecodable_file(catalog):
    with pytest.raises(ImportFormatError):
        import_file(catalog, io.BytesIO(b"A,B\n\xff\xfe\xfa,C\n"), "x", 2000)
    assert catalog.list_albums() == []


def test_read_rows_leaves_stream_open():
    stream = _upload("A,B\n")
    assert list(read_rows(stream)) == [("A", "B")]
    assert not stream.closed


def test_import_is_all_or_nothing(catalog):
    # Second row violates NOT NULL on title
    rows = [("A", "B"), ("C", None), ("E", "F")]
    with pytest.raises(CatalogError):
        import_albums(catalog, rows, "x", 2000)
    assert catalog.list_albums() == []


def test_import_of_empty_file_adds_nothing(catalog):
    assert import_file(catalog, _upload("\n\n"), "x", 2000) == []
    assert catalog.count_albums() == 0
