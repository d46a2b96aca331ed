from post_generator.nodes.image_ranker import rank_images, select_primary_image, size_rank


def test_orig_beats_normal_and_svg_is_excluded():
    ranked = rank_images(["a.svg", "b_normal.jpg", "c?name=orig"])
    assert [c.url for c in ranked] == ["c?name=orig", "b_normal.jpg"]


def test_named_sizes():
    assert size_rank("https://img.example/x?name=orig") == 10000
    assert size_rank("https://img.example/x?name=large") == 5000
    assert size_rank("https://img.example/x?name=medium") == 4000
    assert size_rank("https://img.example/x?size=small") == 1000
    assert size_rank("https://img.example/x?name=thumb") == 500
    assert size_rank("https://img.example/x?name=tiny") == 100


def test_dimensions_multiply():
    assert size_rank("https://img.example/x?name=900x600") == 540000


def test_filename_suffixes():
    assert size_rank("https://img.example/u_bigger.png") == 75
    assert size_rank("https://img.example/u_normal.png") == 50
    assert size_rank("https://img.example/u_mini.png") == 25
    assert size_rank("https://img.example/u.png") == 0


def test_jpeg_wins_ties():
    ranked = rank_images(["https://x/p.png?name=large", "https://x/p.jpg?name=large"])
    assert ranked[0].url == "https://x/p.jpg?name=large"
    assert ranked[0].is_preferred_format
    assert not ranked[1].is_preferred_format


def test_format_query_param_counts_as_jpeg():
    ranked = rank_images(["https://x/media/1?format=png", "https://x/media/2?format=jpg"])
    assert ranked[0].url.endswith("format=jpg")


def test_equal_candidates_keep_input_order():
    urls = ["https://x/one.png", "https://x/two.png", "https://x/three.png"]
    assert [c.url for c in rank_images(urls)] == urls


def test_unusable_entries_are_dropped():
    ranked = rank_images([
        None,
        42,
        "",
        "data:image/png;base64,AAAA",
        "https://x/profile_images/me.jpg",
        "https://x/avatar.png",
        "https://x/spacer.gif",
        "https://x/1x1.gif",
        "https://x/photo.jpg",
    ])
    assert [c.url for c in ranked] == ["https://x/photo.jpg"]


def test_select_primary_image():
    assert select_primary_image(["a.svg", "b_normal.jpg", "c?name=orig"]) == "c?name=orig"
    assert select_primary_image([]) is None
    assert select_primary_image(["a.svg"]) is None
