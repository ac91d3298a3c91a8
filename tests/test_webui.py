from replays import webui


def test_video_url_quotes_each_segment():
    assert webui.video_url("Senior_Women_64kg/clip #1.mp4") == "/videos/Senior_Women_64kg/clip%20%231.mp4"


def test_session_label():
    assert webui.session_label("Senior_Women_64kg") == "Senior Women 64kg"
    assert webui.session_label("unsorted") == "Unsorted clips"


def test_listing_query_keeps_sort_order():
    query = webui.listing_query("Youth Men", sort_by_athlete=True, time_ascending=False, show_all=True)
    assert query == "?session=Youth+Men&sortBy=athlete&timeOrder=desc&showAll=true"


def test_listing_page_links_clips_and_show_all():
    video = {"url_path": "unsorted/a b.mp4", "display_name": "Carl"}
    html = webui.render_template(
        "videolist.html",
        sessions=["unsorted"],
        selected_session="unsorted",
        videos=[video],
        total_count=30,
        show_all=False,
    )
    assert "Unsorted clips" in html
    assert 'href="/videos/unsorted/a%20b.mp4"' in html
    assert "?session=unsorted&amp;sortBy=time&amp;timeOrder=desc&amp;showAll=true" in html
    assert webui.static_url("css/replays.css") in html
