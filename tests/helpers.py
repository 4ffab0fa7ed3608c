import json

from gemstone_analysis.models import (
    AnalysisRequest,
    ImagePayload,
    ImageRef,
    ModelResponse,
    ModelUsage,
)


def build_reply(image_count=3, analyses=None, primary_index=2, primary_score=92, gauge_readings=None):
    """A well-formed model reply covering image_count images."""
    if analyses is None:
        analyses = [
            {
                "image_index": i,
                "image_classification": "gemstone_beauty_shot" if i == primary_index else "label",
                "primary_suitability_score": 90 if i == primary_index else 5,
                "extracted_data": {},
                "confidence": 0.9,
                "analysis_notes": f"Image {i}",
            }
            for i in range(1, image_count + 1)
        ]
    if gauge_readings is None:
        gauge_readings = [
            {
                "image_index": 1,
                "device_type": "digital_scale",
                "measurement_type": "weight",
                "reading_value": 2.47,
                "unit": "ct",
                "display_text": "2.47 ct",
                "confidence": 0.95,
            },
            {
                "image_index": 1,
                "device_type": "thickness_gauge",
                "measurement_type": "depth",
                "reading_value": 3.2,
                "unit": "mm",
                "confidence": 0.8,
            },
        ]
    return {
        "validation": {
            "total_images_analyzed": len(analyses),
            "analysis_complete": True,
            "missing_images": [],
        },
        "individual_analyses": analyses,
        "consolidated_data": {
            "measurements_cross_verified": {
                "weight_ct": {
                    "value": 2.47,
                    "confidence": 0.95,
                    "sources": [{"image_index": 1, "method": "digital scale", "value": 2.47, "confidence": 0.95}],
                },
                "length_mm": {"value": 8.83, "confidence": 0.9},
                "width_mm": {"value": 8.12, "confidence": 0.9},
                "depth_mm": {"value": 3.2, "confidence": 0.8},
            },
            "color": {"value": "green", "confidence": 0.85},
            "shape_cut": "oval",
            "all_gauge_readings": gauge_readings,
        },
        "data_verification": {"cross_verified_fields": ["weight"], "conflicting_fields": []},
        "primary_image_selection": {
            "selected_image_index": primary_index,
            "score": primary_score,
            "confidence": 0.9,
            "reasoning": "Sharp focus, neutral background",
        },
        "overall_confidence": 0.9,
        "data_completeness": 0.85,
    }


def make_payloads(count):
    return [
        ImagePayload(
            image_id=f"img-{i}",
            filename=f"photo_{i}.jpg",
            encoded_bytes=f"data:image/jpeg;base64,AAA{i}",
            order=i - 1,
        )
        for i in range(1, count + 1)
    ]


def make_request(count, item_id="gem-1"):
    return AnalysisRequest(
        item_id=item_id,
        serial_number=f"SN-{item_id}",
        images=[
            ImageRef(id=f"img-{i}", url=f"https://cdn.example.com/{item_id}/{i}.jpg", order=i - 1)
            for i in range(1, count + 1)
        ],
    )


def make_model_response(reply, cost=0.0123, time_ms=1500):
    raw_text = reply if isinstance(reply, str) else json.dumps(reply)
    return ModelResponse(
        raw_text=raw_text,
        model="gpt-5-mini",
        usage=ModelUsage(prompt_tokens=5000, completion_tokens=1200, total_tokens=6200),
        cost_usd=cost,
        time_ms=time_ms,
    )
