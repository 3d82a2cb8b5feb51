"""
Normalization QA pack.

Real-world audiobook file, folder and tag names and the hints they should yield.
"""

from __future__ import annotations

from tome_tagger.normalize import (
    clean_title,
    normalize_author,
    normalize_title,
    parse_filename,
    parse_grouping,
    reliable_year,
)


def test_qa_part_suffix():
    """QA #1: BookA - Part1.m4b"""
    hints = parse_filename("BookA - Part1")
    assert hints.title == "BookA"
    assert hints.part == 1
    assert hints.sequence is None


def test_qa_track_prefix_and_abridgement():
    """QA #2: 03 - The Hobbit (Unabridged).mp3"""
    hints = parse_filename("03 - The Hobbit (Unabridged)")
    assert hints.title == "The Hobbit"
    assert hints.part == 3


def test_qa_book_marker_and_disc():
    """QA #3: Mistborn (Book 2) CD 04.mp3"""
    hints = parse_filename("Mistborn (Book 2) CD 04")
    assert hints.title == "Mistborn"
    assert hints.part == 4
    assert hints.sequence == "2"


def test_qa_chapter_only():
    """QA #4: Chapter 012.mp3 has no usable title"""
    hints = parse_filename("Chapter 012")
    assert hints.title is None
    assert hints.part == 12


def test_qa_rip_noise():
    """QA #5: The Way of Kings [Retail] 128kbps"""
    assert normalize_title("The Way of Kings [Retail] 128kbps") == "the way of kings"
    assert clean_title("The_Way_of_Kings [Retail]") == "The Way of Kings"


def test_qa_diacritics_and_dashes():
    """QA #6: Les Misérables – Unabridged"""
    assert normalize_title("Les Misérables – Unabridged") == "les miserables"


def test_qa_author_initials():
    """QA #7: J.R.R. Tolkien vs J R R Tolkien"""
    assert normalize_author("J.R.R. Tolkien") == normalize_author("J R R Tolkien")
    assert normalize_author("J.R.R. Tolkien") == "j r r tolkien"


def test_qa_grouping_forms():
    """QA #8: grouping tags as written by different taggers"""
    assert parse_grouping("Stormlight Archive, Book 3") == ("Stormlight Archive", "3")
    assert parse_grouping("Discworld #41") == ("Discworld", "41")
    assert parse_grouping("Dune Vol. 2") == ("Dune", "2")
    assert parse_grouping("Standalone") == ("Standalone", None)


def test_qa_release_dates():
    """QA #9: provider release dates"""
    assert reliable_year("2021-01-02") == "2021"
    assert reliable_year("c. 1999") == "1999"
    assert reliable_year("unknown") is None
