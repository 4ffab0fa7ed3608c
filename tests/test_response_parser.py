import json

import pytest

from gemstone_analysis.response_parser import (
    NormalizedResponse,
    ParseFailure,
    coerce_confidence,
    coerce_index,
    coerce_number,
    extract_json_candidate,
    parse_model_response,
)


class TestExtractJsonCandidate:
    def test_fenced_block_wins_over_surrounding_prose(self):
        body = '{"validation": {"total_images_analyzed": 2}, "individual_analyses": []}'
        raw = (
            "I looked at both images {carefully} and here is the result.\n"
            f"```json\n{body}\n```\n"
            "Let me know if you need anything {else}."
        )

        assert extract_json_candidate(raw) == body

    def test_unlabelled_fence(self):
        assert extract_json_candidate('```\n{"a": 1}\n```') == '{"a": 1}'

    def test_first_to_last_brace_without_fence(self):
        raw = 'Result: {"a": {"b": 1}} done'

        assert extract_json_candidate(raw) == '{"a": {"b": 1}}'

    def test_no_braces(self):
        assert extract_json_candidate("I could not analyze these images.") is None


class TestParseModelResponse:
    def test_invalid_json_is_returned_as_failure(self):
        raw = "Here you go: {not valid json}"

        result = parse_model_response(raw)

        assert isinstance(result, ParseFailure)
        assert result.raw_text == raw
        assert result.error

    def test_text_without_json_is_returned_as_failure(self):
        result = parse_model_response("Sorry, no analysis.")

        assert isinstance(result, ParseFailure)
        assert "No valid JSON" in result.error

    def test_canonical_shape(self, reply_factory):
        result = parse_model_response(json.dumps(reply_factory(3)))

        assert isinstance(result, NormalizedResponse)
        assert [a.image_index for a in result.individual_analyses] == [1, 2, 3]
        assert result.individual_analyses[1].classification == "gemstone_beauty_shot"
        assert result.primary_image_selection.index == 2
        assert result.primary_image_selection.score == 92
        assert len(result.gauge_readings) == 2
        assert result.overall_confidence == 0.9
        assert result.source_keys["consolidated_data"] == "consolidated_data"
        assert result.source_keys["gauge_readings"] == "consolidated_data.all_gauge_readings"

    def test_parsing_is_idempotent(self, reply_factory):
        raw = "Analysis:\n```json\n" + json.dumps(reply_factory(4)) + "\n```"

        first = parse_model_response(raw)
        second = parse_model_response(raw)

        assert first.model_dump_json() == second.model_dump_json()

    def test_alternate_top_level_keys(self):
        raw = json.dumps(
            {
                "aggregate_extraction": {"weight": 1.2},
                "images": [{"index": 1, "type": "gemstone_photo", "confidence": 0.8}],
                "best_image": {"image_index": 1, "quality_score": 75, "reasoning": "only photo"},
                "cross_verification": {"consistent": True},
            }
        )

        result = parse_model_response(raw)

        assert result.consolidated_data == {"weight": 1.2}
        assert result.individual_analyses[0].image_index == 1
        assert result.individual_analyses[0].classification == "gemstone_photo"
        assert result.primary_image_selection.index == 1
        assert result.primary_image_selection.score == 75
        assert result.data_verification == {"consistent": True}
        assert result.source_keys == {
            "individual_analyses": "images",
            "consolidated_data": "aggregate_extraction",
            "data_verification": "cross_verification",
            "primary_image_selection": "best_image",
        }

    def test_empty_candidate_is_skipped_for_next_key(self):
        raw = json.dumps({"consolidated_data": {}, "aggregated_data": {"weight_ct": 2.0}})

        result = parse_model_response(raw)

        assert result.consolidated_data == {"weight_ct": 2.0}
        assert result.source_keys["consolidated_data"] == "aggregated_data"

    def test_missing_and_malformed_sections_are_none(self):
        missing = parse_model_response(json.dumps({"consolidated_data": {"a": 1}}))
        malformed = parse_model_response(json.dumps({"individual_analyses": {"1": "x"}}))
        empty = parse_model_response(json.dumps({"individual_analyses": []}))

        assert missing.individual_analyses is None
        assert missing.validation is None
        assert malformed.individual_analyses is None
        assert malformed.consolidated_data is None
        assert empty.individual_analyses == []

    def test_gauge_readings_collected_per_image_with_decimal_commas(self):
        raw = json.dumps(
            {
                "individual_analyses": [
                    {
                        "image_index": 1,
                        "extracted_data": {
                            "measurements": [
                                {"device_type": "label", "measurement_type": "weight", "reading_value": "2,48", "unit": "ct"}
                            ]
                        },
                    },
                    {
                        "image_index": 2,
                        "measurements_detected": [
                            {"device": "caliper", "subject": "length_mm", "value": "8,83 mm", "confidence": 90}
                        ],
                    },
                ],
                "consolidated_data": {"notes": "no aggregate readings"},
            }
        )

        result = parse_model_response(raw)

        assert [(r.image_index, r.measurement_type, r.value) for r in result.gauge_readings] == [
            (1, "weight", 2.48),
            (2, "length", 8.83),
        ]
        assert result.gauge_readings[1].device_type == "caliper"
        assert result.gauge_readings[1].confidence == 0.9
        assert result.source_keys["gauge_readings"] == "individual_analyses[].measurements"

    def test_primary_image_given_as_bare_index(self):
        result = parse_model_response(json.dumps({"primary_image": 3}))

        assert result.primary_image_selection.index == 3


class TestCoercion:
    def test_coerce_number(self):
        assert coerce_number(2.5) == 2.5
        assert coerce_number("2,48 ct") == 2.48
        assert coerce_number({"value": "3.1"}) == 3.1
        assert coerce_number(True) is None
        assert coerce_number("n/a") is None
        assert coerce_number(None) is None

    def test_coerce_confidence_scales_percentages(self):
        assert coerce_confidence(0.85) == 0.85
        assert coerce_confidence(85) == 0.85
        assert coerce_confidence(-1) == 0.0
        assert coerce_confidence(None) is None

    def test_coerce_rejects_non_finite_numbers(self):
        assert coerce_number(float("inf")) is None
        assert coerce_number(float("nan")) is None
        assert coerce_number(10 ** 400) is None
        assert coerce_number("9" * 400) is None
        assert coerce_index(float("nan")) is None
        assert coerce_confidence(float("nan")) is None


class TestNonFiniteTokens:
    @pytest.mark.parametrize("token", ["NaN", "Infinity", "-Infinity"])
    def test_bare_constant_is_a_parse_failure(self, token):
        raw = '{"individual_analyses": [{"image_index": %s}]}' % token

        result = parse_model_response(raw)

        assert isinstance(result, ParseFailure)
        assert token in result.error

    def test_missing_reading_confidence_stays_unset(self):
        raw = json.dumps(
            {"consolidated_data": {"all_gauge_readings": [{"measurement_type": "weight", "value": 2.47, "unit": "ct"}]}}
        )

        result = parse_model_response(raw)

        assert result.gauge_readings[0].confidence is None
