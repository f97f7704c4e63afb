"""Tests for satisfaction rating extraction from free-text replies."""
import pytest

from conversations.rating import extract_rating, is_detractor


class TestShortReplies:
    @pytest.mark.parametrize("text, rating", [
        ("10", 10),
        ("0", 0),
        (" 7 ", 7),
        ("9!", 9),
        ("nota 8", 8),
        ("Nota 10 pontos!", 10),
        ("dou nota 10!", 10),
        ("daria uma nota 6", 6),
        ("nota: 5", 5),
        ("nota é 9", 9),
        ("8 pontos", 8),
        ("avalio com 7", 7),
        ("oito", 8),
        ("Dez!", 10),
        ("zero.", 0),
        ("três", 3),
    ])
    def test_recognised(self, text, rating):
        assert extract_rating(text) == rating

    @pytest.mark.parametrize("text", [
        "",
        None,
        "obrigado!",
        "11",
        "tenho 2 filhos",
        "oito horas da manhã",
        "-1",
    ])
    def test_not_a_rating(self, text):
        assert extract_rating(text) is None


class TestLongReplies:
    def test_incidental_digit_ignored(self):
        text = "Chegou tudo certo, eram 8 caixas e o entregador foi muito educado"
        assert len(text) > 50
        assert extract_rating(text) is None

    def test_explicit_phrase_counts(self):
        text = "Gostei muito do atendimento de vocês, dou nota 10 pro pessoal da loja"
        assert len(text) > 50
        assert extract_rating(text) == 10

    def test_points_phrase(self):
        text = "O produto chegou atrasado mas o suporte resolveu, então 7 pontos"
        assert len(text) > 50
        assert extract_rating(text) == 7

    def test_spelled_number_in_long_text_ignored(self):
        text = "oito " + "muito bom o atendimento, voltarei a comprar com certeza " * 2
        assert extract_rating(text) is None


class TestDetractor:
    @pytest.mark.parametrize("rating, expected", [
        (0, True), (6, True), (7, False), (10, False), (None, False),
    ])
    def test_threshold(self, rating, expected):
        assert is_detractor(rating) is expected
