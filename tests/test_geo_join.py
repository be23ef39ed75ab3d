import pandas as pd

from geo_join import match_location, match_locations, normalize_place, resolve_neighborhoods


def _coords():
    return pd.DataFrame({
        "latitude": [-1.29, -1.30],
        "longitude": [36.78, 36.80],
        "neighborhood": ["Kilimani", "Westlands"],
    })


def test_unmatched_listings_keep_null_neighborhood():
    listings = pd.DataFrame({
        "listing_id": ["a", "b", "c"],
        "latitude": [-1.29, -1.30, -9.0],
        "longitude": [36.78, 36.80, 9.0],
    })

    result = resolve_neighborhoods(listings, _coords())

    assert len(result) == 3
    assert result["neighborhood"].tolist()[:2] == ["Kilimani", "Westlands"]
    assert pd.isna(result["neighborhood"].iloc[2])


def test_duplicate_coordinates_do_not_multiply_listings():
    coords = pd.concat([_coords(), pd.DataFrame({
        "latitude": [-1.29], "longitude": [36.78], "neighborhood": ["Hurlingham"],
    })])
    listings = pd.DataFrame({"listing_id": ["a"], "latitude": [-1.29], "longitude": [36.78]})

    result = resolve_neighborhoods(listings, coords)

    assert len(result) == 1
    assert result["neighborhood"].iloc[0] == "Hurlingham"


def test_precision_rounds_both_sides():
    listings = pd.DataFrame({"listing_id": ["a"], "latitude": ["-1.2900004"], "longitude": ["36.7800001"]})

    assert pd.isna(resolve_neighborhoods(listings, _coords())["neighborhood"].iloc[0])
    assert resolve_neighborhoods(listings, _coords(), precision=4)["neighborhood"].iloc[0] == "Kilimani"


def test_normalize_place():
    assert normalize_place("  Nyali,  MOMBASA ") == "nyali mombasa"
    assert normalize_place(None) == ""


def test_match_location_prefers_most_specific_name():
    assert match_location("Flat in Nairobi West, Nairobi", ["Nairobi", "Nairobi West"]) == "Nairobi West"


def test_match_location_ties_break_alphabetically():
    assert match_location("Kilimani Kasarani border", ["Kilimani", "Kasarani"]) == "Kasarani"


def test_match_location_requires_whole_words():
    assert match_location("Westlandsville", ["Westlands"]) is None
    assert match_location("", ["Westlands"]) is None


def test_alias_table_wins():
    assert match_location("Two Rivers Mall", ["Runda", "Two Rivers"], {"two rivers mall": "Runda"}) == "Runda"


def test_match_locations_adds_nullable_column():
    frame = pd.DataFrame({"location": ["Villa in Karen", "Two Rivers Mall", "Unknown place"]})
    aliases = pd.DataFrame({"location": ["Two Rivers Mall"], "neighborhood": ["Runda"]})

    result = match_locations(frame, ["Karen", "Runda"], aliases)

    assert result["neighborhood"].tolist()[:2] == ["Karen", "Runda"]
    assert pd.isna(result["neighborhood"].iloc[2])
