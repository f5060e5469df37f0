from src.source_scanner import (
    CandidateKind,
    SourceKind,
    candidate_lines,
    of_kind,
    scan_blob,
)


def test_scan_blob_finds_every_family_in_dom_text():
    text = (
        "会社概要\n"
        "所在地 〒100-0001 東京都千代田区千代田1-1\n"
        "TEL 03-1234-5678\n"
        "設立 2015年4月1日\n"
        "https://www.facebook.com/acme.jp\n"
    )
    found = scan_blob(text, SourceKind.DOM, "https://acme.example.jp/")

    phones = [c.value for c in of_kind(found, CandidateKind.PHONE)]
    assert "03-1234-5678" in phones
    assert [c.value for c in of_kind(found, CandidateKind.ZIP)] == ["100-0001"]
    lines = [c.value for c in of_kind(found, CandidateKind.ADDRESS_LINE)]
    assert "所在地 〒100-0001 東京都千代田区千代田1-1" in lines
    assert [c.value for c in of_kind(found, CandidateKind.URL)] == ["https://www.facebook.com/acme.jp"]
    dates = of_kind(found, CandidateKind.DATE_FRAGMENT)
    assert dates and dates[0].value.startswith("設立 2015年4月1日")
    assert all(c.source_kind == SourceKind.DOM for c in found)
    assert all(c.source_url == "https://acme.example.jp/" for c in found)


def test_scan_blob_respects_requested_families():
    text = "TEL 03-1234-5678 〒100-0001 東京都千代田区 https://x.com/acme"
    found = scan_blob(text, SourceKind.HTML, families={CandidateKind.URL})
    assert {c.kind for c in found} == {CandidateKind.URL}
    assert scan_blob(text, SourceKind.HTML, families=set()) == []


def test_scan_blob_marks_tel_links():
    html = '<a href="tel:0312345678">お問い合わせ</a>'
    phones = of_kind(scan_blob(html, SourceKind.HTML), CandidateKind.PHONE)
    tel_links = [c for c in phones if c.tel_link]
    assert len(tel_links) == 1
    assert tel_links[0].value == "0312345678"


def test_scan_blob_decodes_unicode_escapes_in_bundles():
    js = 'var c={label:"\\u8a2d\\u7acb",value:"2001\\u5e745\\u6708"};var u="https:\\/\\/www.instagram.com\\/acme"'
    found = scan_blob(js, SourceKind.JS, "https://acme.example.jp/app-index.js")
    dates = of_kind(found, CandidateKind.DATE_FRAGMENT)
    assert any("2001年5月" in c.value for c in dates)
    urls = [c.value for c in of_kind(found, CandidateKind.URL)]
    assert "https://www.instagram.com/acme" in urls


def test_scan_blob_does_not_read_phone_fragments_as_zip():
    found = scan_blob("フリーダイヤル 0120-123-4567", SourceKind.DOM, families={CandidateKind.ZIP})
    assert found == []


def test_phone_context_window_carries_label():
    text = "代表電話：03-1234-5678"
    phones = of_kind(scan_blob(text, SourceKind.DOM), CandidateKind.PHONE)
    assert phones[0].context_window.startswith("代表電話")


def test_candidate_lines_splits_html_and_keeps_address_like_lines():
    html = "<p>〒530-0001<br>大阪府大阪市北区梅田1-2-3</p><p>ニュース一覧</p>"
    lines = candidate_lines(html)
    assert lines == ["〒530-0001 大阪府大阪市北区梅田1-2-3"]
