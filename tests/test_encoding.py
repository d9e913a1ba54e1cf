import pytest

from catalog_crawler.encoding import (
    charset_from_content_type,
    charset_from_host,
    charset_from_meta,
    decode_body,
    normalize_encoding_name,
    resolve_encoding,
)

SAMPLE = "カリビアンコム 出演: 佐々木あき 価格 2,000円"


def _page(charset: str, text: str = SAMPLE) -> str:
    return f'<html><head><meta http-equiv="Content-Type" content="text/html; charset={charset}"></head><body>{text}</body></html>'


@pytest.mark.parametrize("codec,label", [
    ("euc_jp", "EUC-JP"),
    ("shift_jis", "Shift_JIS"),
    ("utf-8", "UTF-8"),
])
def test_round_trip_with_header(codec, label):
    body = _page(label).encode(codec)
    text = decode_body(body, f"text/html; charset={label}", "https://example.org/a")
    assert SAMPLE in text


@pytest.mark.parametrize("codec,label", [
    ("euc_jp", "euc-jp"),
    ("shift_jis", "sjis"),
    ("utf-8", "utf-8"),
])
def test_round_trip_without_header_uses_meta(codec, label):
    body = _page(label).encode(codec)
    enc, source = resolve_encoding(body, "text/html", "https://example.org/a")
    assert source == "meta"
    assert SAMPLE in decode_body(body, "text/html", "https://example.org/a")


def test_known_host_wins_over_meta():
    # DTI pages often claim one thing in <meta> and serve EUC-JP.
    body = _page("utf-8").encode("euc_jp")
    enc, source = resolve_encoding(body, None, "https://www.caribbeancom.com/moviepages/112924_001/index.html")
    assert (enc, source) == ("euc_jp", "host")
    assert SAMPLE in decode_body(body, None, "https://www.caribbeancom.com/moviepages/112924_001/index.html")


def test_header_wins_over_host():
    body = SAMPLE.encode("utf-8")
    enc, source = resolve_encoding(body, "text/html; charset=utf-8", "https://www.1pondo.tv/movies/x/")
    assert (enc, source) == ("utf-8", "header")


def test_default_is_utf8():
    assert resolve_encoding(b"<html></html>", None, None) == ("utf-8", "default")


def test_never_raises_on_garbled_input():
    garbled = b"\xff\xfe\x80\x81<html>\x8e\xa1\xa1\xa1\xfe"
    assert isinstance(decode_body(garbled, "text/html; charset=utf-8", None), str)
    assert isinstance(decode_body(garbled, "text/html; charset=no-such-codec", None), str)
    assert isinstance(decode_body(garbled, None, "https://www.heyzo.com/moviepages/0001/index.html"), str)
    assert decode_body(b"", None, None) == ""


def test_wrong_declared_charset_falls_back_to_utf8():
    body = SAMPLE.encode("utf-8")
    # UTF-8 Japanese is not valid Shift_JIS throughout; the fallback must still produce the text.
    text = decode_body(body, "text/html; charset=ascii", None)
    assert text == SAMPLE


def test_label_helpers():
    assert normalize_encoding_name("Shift-JIS") == "shift_jis"
    assert normalize_encoding_name("x-euc-jp") == "euc_jp"
    assert normalize_encoding_name("latin1") == "iso8859-1"
    assert normalize_encoding_name("bogus-charset") is None
    assert normalize_encoding_name(None) is None
    assert charset_from_content_type('text/html; charset="EUC-JP"') == "euc_jp"
    assert charset_from_content_type("text/html") is None
    assert charset_from_host("https://smovie.10musume.com/x") == "euc_jp"
    assert charset_from_host("https://example.org/") is None
    assert charset_from_meta(b'<meta charset="shift_jis">') == "shift_jis"
