from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, Mapping, Optional, Tuple

from .extraction import (
    DEFAULT_STRATEGIES,
    Strategy,
    description_from_meta,
    description_from_selector,
    duration_from_minutes,
    performers_from_links,
    sample_video_from_source_tag,
    thumbnail_from_og,
    title_from_og,
    title_from_page_title_segment,
    title_from_selector,
)
from .sequencer import DateOrdinalScheme, Direction, IdScheme, NumericScheme


@dataclass(frozen=True)
class SiteConfig:
    """
    Everything that differs between crawled sites.

    One generic controller runs every site; the addressing scheme, pacing,
    request decorations and extraction strategies all come from here.
    """
    key: str
    site_name: str
    asp_name: str
    base_url: str
    url_template: str
    scheme: IdScheme
    direction: Direction
    default_start: str
    breaker_threshold: int
    delay_ms: int
    default_end: Optional[str] = None
    cookie: Optional[str] = None
    side_channel_template: Optional[str] = None
    sample_video_template: Optional[str] = None
    # Extra names that show up in <title> suffixes or as bare placeholder titles.
    alt_names: Tuple[str, ...] = ()
    # Case-insensitive markers that disqualify og:title (it names the site, not the item).
    brand_markers: Tuple[str, ...] = ()
    # Literal strings only found on the site's landing page.
    top_page_markers: Tuple[str, ...] = ()
    strategies: Mapping[str, Tuple[Strategy, ...]] = field(default_factory=dict)

    @property
    def all_site_names(self) -> Tuple[str, ...]:
        return (self.site_name, self.asp_name, *self.alt_names)

    def page_url(self, local_id: str) -> str:
        return self.url_template.format(id=local_id)

    def side_channel_url(self, local_id: str) -> Optional[str]:
        if not self.side_channel_template:
            return None
        return self.side_channel_template.format(id=local_id)

    def sample_video_url(self, local_id: str) -> Optional[str]:
        if not self.sample_video_template:
            return None
        return self.sample_video_template.format(id=local_id, id4=local_id.zfill(4))

    def strategy_table(self) -> Dict[str, Tuple[Strategy, ...]]:
        table = dict(DEFAULT_STRATEGIES)
        table.update(self.strategies)
        return table

    def with_overrides(self, **changes) -> "SiteConfig":
        return replace(self, **changes)


# ---------- DTI family (EUC-JP, MMDDYY_NNN ids, newest first) ----------

_DTI_START = "112924_001"

def _dti_site(key: str, site_name: str, asp_name: str, host: str, *, alt_names: Tuple[str, ...] = (),
              sample_video: Optional[str] = None) -> SiteConfig:
    return SiteConfig(
        key=key,
        site_name=site_name,
        asp_name=asp_name,
        base_url=f"https://www.{host}",
        url_template=f"https://www.{host}/moviepages/{{id}}/index.html",
        scheme=DateOrdinalScheme(ordinal_width=3, max_per_date=10),
        direction=Direction.REVERSE,
        default_start=_DTI_START,
        breaker_threshold=50,
        delay_ms=500,
        sample_video_template=sample_video,
        alt_names=alt_names,
    )


SITES: Dict[str, SiteConfig] = {
    "caribbeancom": _dti_site(
        "caribbeancom", "カリビアンコム", "CARIBBEANCOM", "caribbeancom.com",
        alt_names=("Caribbeancom",),
        sample_video="https://www.caribbeancom.com/moviepages/{id}/sample/sample.mp4",
    ),
    "caribbeancompr": _dti_site(
        "caribbeancompr", "カリビアンコムプレミアム", "CARIBBEANCOMPR", "caribbeancompr.com",
        alt_names=("Caribbeancompr",),
        sample_video="https://www.caribbeancompr.com/moviepages/{id}/sample/sample.mp4",
    ),
    "1pondo": SiteConfig(
        key="1pondo",
        site_name="一本道",
        asp_name="1PONDO",
        base_url="https://www.1pondo.tv",
        url_template="https://www.1pondo.tv/movies/{id}/",
        scheme=DateOrdinalScheme(ordinal_width=3, max_per_date=10),
        direction=Direction.REVERSE,
        default_start=_DTI_START,
        breaker_threshold=50,
        delay_ms=500,
        side_channel_template="https://www.1pondo.tv/dyn/phpauto/movie_details/movie_id/{id}.json",
        sample_video_template="https://smovie.1pondo.tv/sample/movies/{id}/1080p.mp4",
        alt_names=("1pondo",),
    ),
    "heyzo": SiteConfig(
        key="heyzo",
        site_name="HEYZO",
        asp_name="HEYZO",
        base_url="https://www.heyzo.com",
        url_template="https://www.heyzo.com/moviepages/{id}/index.html",
        scheme=NumericScheme(width=4, min_value=1, max_value=9999),
        direction=Direction.FORWARD,
        default_start="3500",
        breaker_threshold=20,
        delay_ms=500,
        sample_video_template="https://sample.heyzo.com/contents/3000/{id4}/heyzo_hd_{id4}_sample.mp4",
    ),
    "10musume": _dti_site("10musume", "天然むすめ", "10MUSUME", "10musume.com", alt_names=("10musume",)),
    "pacopacomama": _dti_site("pacopacomama", "パコパコママ", "PACOPACOMAMA", "pacopacomama.com",
                              alt_names=("pacopacomama",)),
    "japanska": SiteConfig(
        key="japanska",
        site_name="Japanska",
        asp_name="JAPANSKA",
        base_url="https://www.japanska-xxx.com",
        url_template="https://www.japanska-xxx.com/movie/detail_{id}.html",
        scheme=NumericScheme(width=1, min_value=1, max_value=999999),
        direction=Direction.FORWARD,
        default_start="34000",
        breaker_threshold=20,
        delay_ms=500,
        alt_names=("JAPANSKA",),
        brand_markers=("JAPANSKA",),
        top_page_markers=("<!--home.html-->",),
        strategies={
            "title": (
                title_from_selector("div.movie_ttl p"),
                title_from_og,
                title_from_page_title_segment,
            ),
            "description": (description_from_selector("div.comment"), description_from_meta),
            "performers": (performers_from_links("actress", exclude=("女優一覧",)),),
            "thumbnail_url": (thumbnail_from_og,),
            "sample_video_url": (sample_video_from_source_tag,),
            "duration_min": (duration_from_minutes,),
        },
    ),
}


def get_site(key: str) -> SiteConfig:
    try:
        return SITES[key.strip().lower()]
    except KeyError:
        raise KeyError(f"unknown site {key!r}; known: {', '.join(sorted(SITES))}") from None


def site_keys() -> Tuple[str, ...]:
    return tuple(SITES)
