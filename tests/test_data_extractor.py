import json

import pytest

from gemstone_analysis.data_extractor import (
    count_data_sources,
    extract_gemstone_data,
    search_key,
    should_update_field,
)
from gemstone_analysis.models import ConsolidatedAnalysis, GaugeReading, PerImageAnalysis
from gemstone_analysis.response_parser import parse_model_response


def analysis_from_reply(reply):
    parsed = parse_model_response(json.dumps(reply))
    return ConsolidatedAnalysis(
        consolidated_data=parsed.consolidated_data or {},
        individual_analyses=parsed.individual_analyses or [],
        gauge_readings=parsed.gauge_readings,
        data_verification=parsed.data_verification,
    )


class TestShouldUpdateField:
    def test_manual_value_always_wins(self):
        assert should_update_field(5.2, 5.3, 0.99) is False
        assert should_update_field(0, 5.3, 0.99) is False

    def test_confident_ai_value_fills_empty_field(self):
        assert should_update_field(None, 5.3, 0.9) is True

    def test_low_confidence_is_ignored(self):
        assert should_update_field(None, 5.3, 0.5) is False

    def test_threshold_is_exclusive(self):
        assert should_update_field(None, 5.3, 0.7) is False
        assert should_update_field(None, 5.3, None) is False

    def test_missing_ai_value(self):
        assert should_update_field(None, None, 0.99) is False


class TestCountDataSources:
    def test_counts(self):
        record = {
            "weight_carats": 5.2,
            "ai_weight_carats": 5.3,
            "length_mm": 8.1,
            "ai_color": "green",
        }

        assert count_data_sources(record) == {"manual": 1, "ai_only": 1, "both": 1, "empty": 4}


class TestExtractGemstoneData:
    def test_aggregated_block_is_used_first(self, reply_factory):
        extracted = extract_gemstone_data(analysis_from_reply(reply_factory(3)))

        assert extracted.strategy == "aggregated"
        assert extracted.weight_carats == 2.47
        assert extracted.length_mm == 8.83
        assert extracted.width_mm == 8.12
        assert extracted.depth_mm == 3.2
        assert extracted.color == "green"
        assert extracted.cut == "oval"
        assert extracted.clarity is None
        assert extracted.extraction_confidence == pytest.approx(0.88)
        assert extracted.fields["weight_carats"].sources[0].image_index == 1
        assert extracted.extracted_at is not None

    def test_highest_confidence_reading_wins(self):
        analysis = ConsolidatedAnalysis(
            gauge_readings=[
                GaugeReading(image_index=1, device_type="digital_scale", measurement_type="weight",
                             value=2.48, unit="ct", confidence=0.9),
                GaugeReading(image_index=2, device_type="label", measurement_type="weight",
                             value=2.47, unit="ct", confidence=0.95),
            ]
        )

        extracted = extract_gemstone_data(analysis)

        assert extracted.strategy == "individual"
        assert extracted.weight_carats == 2.47
        assert extracted.extraction_confidence == pytest.approx(0.95)
        sources = extracted.fields["weight_carats"].sources
        assert [(s.image_index, s.value) for s in sources] == [(1, 2.48), (2, 2.47)]

    def test_zero_confidence_is_not_raised_to_default(self):
        analysis = ConsolidatedAnalysis(
            gauge_readings=[
                GaugeReading(image_index=1, measurement_type="weight", value=9.0, unit="ct", confidence=0.0),
                GaugeReading(image_index=2, measurement_type="weight", value=2.47, unit="ct", confidence=0.4),
            ]
        )

        extracted = extract_gemstone_data(analysis)

        assert extracted.weight_carats == 2.47
        assert extracted.fields["weight_carats"].confidence == 0.4
        assert [s.confidence for s in extracted.fields["weight_carats"].sources] == [0.0, 0.4]

    def test_first_reading_kept_on_equal_confidence(self):
        analysis = ConsolidatedAnalysis(
            gauge_readings=[
                GaugeReading(image_index=1, measurement_type="depth", value=3.1, unit="mm"),
                GaugeReading(image_index=2, measurement_type="thickness", value=3.3, unit="mm"),
            ]
        )

        extracted = extract_gemstone_data(analysis)

        assert extracted.depth_mm == 3.1
        assert extracted.fields["depth_mm"].confidence == 0.5

    def test_gram_weight_is_converted_to_carats(self):
        analysis = ConsolidatedAnalysis(
            gauge_readings=[GaugeReading(image_index=1, measurement_type="weight", value=0.5, unit="g", confidence=0.9)]
        )

        assert extract_gemstone_data(analysis).weight_carats == 2.5

    def test_color_and_cut_from_notes(self):
        analysis = ConsolidatedAnalysis(
            individual_analyses=[PerImageAnalysis(image_index=1, notes="Color: deep green, oval cut with good polish")]
        )

        extracted = extract_gemstone_data(analysis)

        assert extracted.strategy == "individual"
        assert extracted.color == "deep green"
        assert extracted.cut == "oval"
        assert extracted.extraction_confidence == 0.0

    def test_flexible_search(self):
        analysis = ConsolidatedAnalysis(
            data_verification={"final": {"weight_ct": {"value": 1.5, "confidence": 0.8}}}
        )

        extracted = extract_gemstone_data(analysis)

        assert extracted.strategy == "flexible"
        assert extracted.weight_carats == 1.5
        assert extracted.extraction_confidence == pytest.approx(0.8)

    def test_nothing_found(self):
        extracted = extract_gemstone_data(ConsolidatedAnalysis())

        assert extracted.strategy is None
        assert extracted.extraction_confidence == 0.0
        assert all(v is None for v in extracted.attribute_values().values())


class TestSearchKey:
    def test_nested_lists_and_dicts(self):
        tree = {"a": [{"b": {}}, {"c": {"weight": 3}}]}

        assert search_key(tree, "weight") == 3
        assert search_key(tree, "missing") is None
