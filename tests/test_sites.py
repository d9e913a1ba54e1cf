import pytest

from catalog_crawler.sequencer import DateOrdinalScheme, Direction, NumericScheme, is_valid_id
from catalog_crawler.sites import SITES, get_site, site_keys


def test_every_site_default_start_is_valid():
    for key in site_keys():
        site = SITES[key]
        assert is_valid_id(site.default_start, site.scheme), key
        assert site.breaker_threshold > 0
        assert site.delay_ms >= 0


def test_dti_family_shape():
    for key in ("caribbeancom", "caribbeancompr", "10musume", "pacopacomama", "1pondo"):
        site = get_site(key)
        assert isinstance(site.scheme, DateOrdinalScheme)
        assert site.direction is Direction.REVERSE
        assert site.default_start == "112924_001"

    assert get_site("caribbeancom").page_url("112924_001") == \
        "https://www.caribbeancom.com/moviepages/112924_001/index.html"


def test_1pondo_side_channel_and_video():
    site = get_site("1pondo")
    assert site.page_url("112924_001") == "https://www.1pondo.tv/movies/112924_001/"
    assert site.side_channel_url("112924_001") == \
        "https://www.1pondo.tv/dyn/phpauto/movie_details/movie_id/112924_001.json"
    assert site.sample_video_url("112924_001") == "https://smovie.1pondo.tv/sample/movies/112924_001/1080p.mp4"
    assert get_site("heyzo").side_channel_url("3500") is None


def test_heyzo_and_japanska_are_numeric_forward():
    heyzo = get_site("heyzo")
    assert heyzo.scheme == NumericScheme(width=4, min_value=1, max_value=9999)
    assert heyzo.direction is Direction.FORWARD
    assert heyzo.sample_video_url("42") == "https://sample.heyzo.com/contents/3000/0042/heyzo_hd_0042_sample.mp4"

    japanska = get_site("japanska")
    assert japanska.page_url("34000") == "https://www.japanska-xxx.com/movie/detail_34000.html"
    assert japanska.strategy_table()["title"] != heyzo.strategy_table()["title"]


def test_get_site_is_case_insensitive_and_lists_known_keys():
    assert get_site(" HEYZO ").key == "heyzo"
    with pytest.raises(KeyError) as exc:
        get_site("nope")
    assert "heyzo" in str(exc.value)


def test_with_overrides_returns_a_copy():
    base = get_site("heyzo")
    tweaked = base.with_overrides(breaker_threshold=3)
    assert tweaked.breaker_threshold == 3
    assert base.breaker_threshold == 20
