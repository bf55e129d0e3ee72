"""Tests for move-in date parsing and the notes line."""

from rental_tracker.services.move_in import (
    is_entry_date,
    merge_notes_with_entry_date,
    parse_date_from_text,
    parse_moving_date,
)


class TestParsing:
    def test_numeric(self):
        assert parse_date_from_text("Disponible dès le 1.4.2026") == "01.04.2026"
        assert parse_date_from_text("libre au 15/05/26") == "15.05.2026"

    def test_french_month(self):
        assert parse_date_from_text("Entrée le 1er août 2026") == "01.08.2026"
        assert parse_date_from_text("dès le 3 Février 2027") == "03.02.2027"

    def test_invalid_date(self):
        assert parse_date_from_text("31.02.2026") is None
        assert parse_date_from_text("de suite") is None

    def test_iso_moving_date(self):
        assert parse_moving_date("2026-07-01") == "01.07.2026"
        assert parse_moving_date("2026-07-01T00:00:00") == "01.07.2026"

    def test_empty_moving_date(self):
        assert parse_moving_date(None) is None
        assert parse_moving_date("immediately") is None

    def test_is_entry_date(self):
        assert is_entry_date("01.07.2026")
        assert not is_entry_date("1.7.2026")
        assert not is_entry_date(None)


class TestNotesLine:
    def test_inserted_after_user_notes(self):
        assert merge_notes_with_entry_date("Appelé la régie", "01.07.2026") == "Appelé la régie\nEntrée : 01.07.2026"

    def test_inserted_into_empty_notes(self):
        assert merge_notes_with_entry_date("", "01.07.2026") == "Entrée : 01.07.2026"

    def test_replaced_in_place(self):
        notes = "Visite mardi\nEntrée : 01.06.2026\nDemander parking"

        merged = merge_notes_with_entry_date(notes, "01.07.2026")

        assert merged == "Visite mardi\nEntrée : 01.07.2026\nDemander parking"

    def test_stripped_without_date(self):
        notes = "Visite mardi\nEntree : 01.06.2026\nDemander parking"
        assert merge_notes_with_entry_date(notes, None) == "Visite mardi\nDemander parking"

    def test_user_lines_untouched(self):
        notes = "Ligne 1\nLigne 2"
        assert merge_notes_with_entry_date(notes, None) == notes

    def test_round_trip(self):
        once = merge_notes_with_entry_date("Note", "01.07.2026")
        assert merge_notes_with_entry_date(once, "01.07.2026") == once
        assert merge_notes_with_entry_date(once, None) == "Note"

    def test_line_mentioning_entree_is_not_the_entry_line(self):
        notes = "Porte d'entrée : code 1234\nAppeler lundi"

        assert merge_notes_with_entry_date(notes, None) == notes
        assert merge_notes_with_entry_date(notes, "01.07.2026") == f"{notes}\nEntrée : 01.07.2026"

    def test_entry_line_must_start_the_line(self):
        notes = "Rappel Entrée : voir régie"
        assert merge_notes_with_entry_date(notes, None) == notes

    def test_blank_lines_kept(self):
        notes = "Visite ok\n\nDossier: fiches de salaire\n"

        assert merge_notes_with_entry_date(notes, None) == notes
        assert merge_notes_with_entry_date(notes, "01.07.2026") == f"{notes}Entrée : 01.07.2026"

    def test_strip_keeps_surrounding_paragraphs(self):
        notes = "Visite ok\n\nEntrée : 01.06.2026\n\nRelancer"
        assert merge_notes_with_entry_date(notes, None) == "Visite ok\n\n\nRelancer"
