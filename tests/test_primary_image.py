import pytest

from gemstone_analysis.models import ImageBatchEntry, PerImageAnalysis, PrimaryImageSelection
from gemstone_analysis.primary_image import PrimaryImageSelector


@pytest.fixture
def image_batch():
    return [ImageBatchEntry(image_id=f"img-{i}", filename=f"photo_{i}.jpg", order=i - 1) for i in range(1, 4)]


class TestPrimaryImageSelector:
    def test_index_is_one_based(self, image_batch):
        decision = PrimaryImageSelector().select(
            PrimaryImageSelection(index=2, score=88, reasoning="Best lighting"), image_batch
        )

        assert decision.image_id == "img-2"
        assert decision.index == 2
        assert decision.score == 88
        assert decision.reasoning == "Best lighting"
        assert decision.needs_review is False

    @pytest.mark.parametrize("index", [0, 4, None])
    def test_out_of_range_or_missing_index(self, image_batch, index):
        assert PrimaryImageSelector().select(PrimaryImageSelection(index=index, score=90), image_batch) is None

    def test_no_selection(self, image_batch):
        assert PrimaryImageSelector().select(None, image_batch) is None

    def test_low_score_is_flagged(self, image_batch):
        decision = PrimaryImageSelector(min_score=60).select(PrimaryImageSelection(index=1, score=45), image_batch)

        assert decision.image_id == "img-1"
        assert decision.needs_review is True
        assert decision.review_reason == "score 45 is below minimum 60"

    def test_low_score_is_rejected(self, image_batch):
        selector = PrimaryImageSelector(policy="reject", min_score=60)

        assert selector.select(PrimaryImageSelection(index=1, score=45), image_batch) is None

    def test_disqualified_classification_is_flagged(self, image_batch):
        analyses = [PerImageAnalysis(image_index=3, classification="label")]

        decision = PrimaryImageSelector().select(PrimaryImageSelection(index=3, score=95), image_batch, analyses)

        assert decision.needs_review is True
        assert "label" in decision.review_reason

    def test_unknown_policy(self):
        with pytest.raises(ValueError, match="Unknown primary image policy"):
            PrimaryImageSelector(policy="ignore")
