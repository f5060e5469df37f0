from src.field_extractors import (
    TIER_LABELED,
    TIER_SCORED,
    TIER_TEL_LINK,
    collect_social_links,
    extract_founding_date,
    founding_date_from_label_pairs,
    is_labeled,
    is_social_url,
    parse_address_line,
    pick_best_phone,
    resolve_address,
    resolve_phone,
    score_phone,
)
from src.source_scanner import CandidateKind, RawCandidate, SourceKind, of_kind, scan_blob


def _phone(value, context="", tel_link=False):
    return RawCandidate(CandidateKind.PHONE, value, SourceKind.HTML, "", context, tel_link)


def test_labeled_phone_beats_free_dial_dummy_end_to_end():
    text = "お問い合わせ フリーダイヤル 0120-000-000\n\n\n" + "ー" * 70 + "\n代表電話 03-1234-5678"
    candidates = of_kind(scan_blob(text, SourceKind.DOM), CandidateKind.PHONE)
    res = resolve_phone(candidates, text)
    assert res.telephone == "03-1234-5678"
    assert res.tier == TIER_LABELED


def test_dummy_phone_is_never_returned():
    candidates = [
        _phone("0120-000-000", "TEL 0120-000-000"),
        _phone("03-3333-3333", "", tel_link=True),
        _phone("000-1234-5678"),
    ]
    assert pick_best_phone(candidates, "0120-000-000 03-3333-3333") is None


def test_first_labeled_phone_wins_in_discovery_order():
    candidates = [
        _phone("06-6789-1234"),
        _phone("045-123-4567", "電話：045-123-4567"),
        _phone("03-1234-5678", "TEL 03-1234-5678"),
    ]
    res = resolve_phone(candidates)
    assert res.telephone == "045-123-4567"
    assert res.tier == TIER_LABELED


def test_tel_link_tier_skips_navi_dial_prefixes():
    candidates = [
        _phone("0570-01-2345", 'href="tel:0570012345"', tel_link=True),
        _phone("052-123-4567", 'href="tel:0521234567"', tel_link=True),
        _phone("03-1234-5678"),
    ]
    res = resolve_phone(candidates)
    assert res.telephone == "052-123-4567"
    assert res.tier == TIER_TEL_LINK


def test_tel_scheme_alone_is_not_a_label():
    html = '<a href="tel:0521234567">お問い合わせはこちら</a>'
    candidates = of_kind(scan_blob(html, SourceKind.HTML), CandidateKind.PHONE)
    res = resolve_phone(candidates)
    assert res.telephone == "052-123-4567"
    assert res.tier == TIER_TEL_LINK


def test_scored_tier_prefers_visible_then_tokyo_and_keeps_first_on_tie():
    visible = "本社 052-123-4567"
    candidates = [_phone("06-6789-1234"), _phone("03-1234-5678"), _phone("0521234567")]
    res = resolve_phone(candidates, visible)
    assert res.telephone == "052-123-4567"
    assert res.tier == TIER_SCORED

    assert pick_best_phone([_phone("06-6789-1234"), _phone("03-1234-5678")]) == "03-1234-5678"
    assert pick_best_phone([_phone("045-123-4567"), _phone("052-123-4567")]) == "045-123-4567"


def test_score_phone_components():
    assert score_phone("03-1234-5678") == 3
    assert score_phone("06-6789-1234") == 2
    assert score_phone("045-123-4567", "TEL 045 123 4567") == 25
    assert score_phone("0120-000-000") == -10


def test_address_requires_zip_and_prefecture_on_same_line():
    assert parse_address_line("東京都千代田区千代田1-1") is None
    assert parse_address_line("〒100-0001 千代田区千代田1-1") is None
    assert resolve_address(["〒100-0001", "東京都千代田区千代田1-1"]) is None


def test_parse_address_line_splits_components():
    addr = parse_address_line("本社 〒100-0001 東京都千代田区千代田1-1 TEL 03-1234-5678")
    assert addr is not None
    assert addr.postal_code == "100-0001"
    assert addr.address_region == "東京都"
    assert addr.address_locality == "千代田区"
    assert addr.street_address == "千代田1-1"
    assert addr.to_schema() == {
        "@type": "PostalAddress",
        "postalCode": "100-0001",
        "addressRegion": "東京都",
        "addressLocality": "千代田区",
        "streetAddress": "千代田1-1",
        "addressCountry": "JP",
    }


def test_parse_address_line_designated_city_ward():
    addr = parse_address_line("〒530-0001 大阪府大阪市北区梅田1-2-3")
    assert addr.address_region == "大阪府"
    assert addr.address_locality == "大阪市北区"
    assert addr.street_address == "梅田1-2-3"


def test_resolve_address_first_qualifying_line_wins():
    lines = [
        "大阪府大阪市北区梅田1-2-3",
        "〒150-0002 東京都渋谷区渋谷2-1-1",
        "〒530-0001 大阪府大阪市北区梅田1-2-3",
    ]
    addr = resolve_address(lines)
    assert addr.postal_code == "150-0002"
    assert addr.address_region == "東京都"


def test_extract_founding_date_examples():
    assert extract_founding_date("設立 2015年4月1日") == "2015-04-01"
    assert extract_founding_date("創業1998年") == "1998-01-01"
    assert extract_founding_date("設立2021年13月5日") is None
    assert extract_founding_date("2015年4月1日") is None


def test_extract_founding_date_prefers_finer_granularity():
    text = "創業 1950年\n設立 1962年8月10日"
    assert extract_founding_date(text) == "1962-08-10"


def test_extract_founding_date_from_era_year():
    assert extract_founding_date("設立 平成10年4月") == "1998-04-01"


def test_founding_date_from_label_pairs():
    html = """
    <table>
      <tr><th>会社名</th><td>株式会社サンプル</td></tr>
      <tr><th>設立</th><td>2008年6月</td></tr>
    </table>
    <dl><dt>創業</dt><dd>1970年</dd></dl>
    """
    assert founding_date_from_label_pairs(html) == "2008-06-01"


def test_founding_date_from_dl_pairs():
    html = "<dl><dt>代表者</dt><dd>山田 太郎</dd><dt>創立</dt><dd>1985年3月12日</dd></dl>"
    assert founding_date_from_label_pairs(html) == "1985-03-12"


def test_is_social_url():
    assert is_social_url("https://www.facebook.com/acme.jp")
    assert is_social_url("https://x.com/acme_jp")
    assert is_social_url("https://www.youtube.com/@acme")
    assert is_social_url("https://line.me/R/ti/p/@acme")
    assert not is_social_url("https://www.facebook.com/sharer/sharer.php?u=https://acme.jp")
    assert not is_social_url("https://twitter.com/intent/tweet?text=hi")
    assert not is_social_url("https://platform.twitter.com/widgets.js")
    assert not is_social_url("https://connect.facebook.net/ja_JP/sdk.js")
    assert not is_social_url("https://www.instagram.com/")
    assert not is_social_url("https://acme.jp/facebook.com/acme")
    assert not is_social_url("/relative/path")


def test_collect_social_links_dedupes_in_first_seen_order():
    urls = [
        "https://acme.jp/about",
        "https://www.instagram.com/acme",
        "https://www.facebook.com/acme.jp",
        "https://www.instagram.com/acme",
        "https://twitter.com/share",
    ]
    assert collect_social_links(urls) == [
        "https://www.instagram.com/acme",
        "https://www.facebook.com/acme.jp",
    ]


def test_year_month_label_does_not_borrow_following_number_as_day():
    assert extract_founding_date("設立 2015年4月 12名") == "2015-04-01"


def test_phone_words_inside_other_words_or_urls_are_not_labels():
    assert not is_labeled(_phone("03-1234-5678", "iPhone 03-1234-5678"))
    assert not is_labeled(_phone("03-1234-5678", "smartphone 03-1234-5678"))
    assert not is_labeled(_phone("03-1234-5678", "https://acme.jp/tel/ 03-1234-5678"))
    assert not is_labeled(_phone("03-1234-5678", "https://acme.jp/phone 03-1234-5678"))
    assert is_labeled(_phone("03-1234-5678", "TEL/FAX 03-1234-5678"))
    assert is_labeled(_phone("03-1234-5678", "Phone: 03-1234-5678"))
