from collision.location import LocationSnapshot, match_tier


class TestMatchTier:
    def test_same_district_is_district(self):
        a = LocationSnapshot("China", "Zhejiang", "Hangzhou", "Xihu")
        b = LocationSnapshot("China", "Zhejiang", "Hangzhou", "Xihu")
        assert match_tier(a, b) == "district"

    def test_same_city_other_district_is_city(self):
        a = LocationSnapshot("China", "Zhejiang", "Hangzhou", "Xihu")
        b = LocationSnapshot("China", "Zhejiang", "Hangzhou", "Binjiang")
        assert match_tier(a, b) == "city"

    def test_country_only(self):
        a = LocationSnapshot("China", "Zhejiang")
        b = LocationSnapshot("China", "Sichuan")
        assert match_tier(a, b) == "country"

    def test_no_overlap(self):
        a = LocationSnapshot("China", "Zhejiang")
        b = LocationSnapshot("Japan", "Tokyo")
        assert match_tier(a, b) is None

    def test_case_and_whitespace_insensitive(self):
        a = LocationSnapshot("  china ", "ZHEJIANG", "hangzhou ")
        b = LocationSnapshot("China", "Zhejiang", "Hangzhou")
        assert match_tier(a, b) == "city"

    def test_missing_field_stops_the_walk(self):
        # district equal but city missing on one side: city and below are out
        a = LocationSnapshot("China", "Zhejiang", None, "Xihu")
        b = LocationSnapshot("China", "Zhejiang", "Hangzhou", "Xihu")
        assert match_tier(a, b) == "province"

    def test_blank_is_missing(self):
        a = LocationSnapshot("", "Zhejiang")
        b = LocationSnapshot("China", "Zhejiang")
        assert match_tier(a, b) is None
        assert LocationSnapshot("  ").country is None

    def test_symmetric(self):
        a = LocationSnapshot("China", "Zhejiang", "Hangzhou", "Xihu")
        b = LocationSnapshot("China", "Zhejiang", "Ningbo")
        assert match_tier(a, b) == match_tier(b, a) == "province"
