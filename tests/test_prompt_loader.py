import pytest

from gemstone_analysis.models import FewShotExample
from gemstone_analysis.prompt_loader import (
    IMAGE_COUNT_PLACEHOLDER,
    build_prompt,
    format_few_shot_for_api,
    load_few_shot_examples,
    load_prompt,
)


class TestBuildPrompt:
    def test_count_is_stated_in_task_and_checklist(self):
        prompt = build_prompt(8)

        assert "Analyze all 8 images" in prompt
        assert "EXACTLY 8 entries" in prompt
        assert IMAGE_COUNT_PLACEHOLDER not in prompt

    def test_template_without_placeholder_gets_task_line(self):
        prompt = build_prompt(3, template="Describe the stone.")

        assert prompt.startswith("**TASK: Analyze all 3 images of one gemstone.**")
        assert "Describe the stone." in prompt
        assert "EXACTLY 3 entries" in prompt

    def test_custom_template_placeholder_is_rendered(self):
        prompt = build_prompt(2, template="Look at these {IMAGE_COUNT} photos.")

        assert prompt.startswith("Look at these 2 photos.")

    @pytest.mark.parametrize("count", [0, -1])
    def test_non_positive_count(self, count):
        with pytest.raises(ValueError):
            build_prompt(count)


class TestLoadPrompt:
    def test_text_file(self, tmp_path):
        prompt_file = tmp_path / "prompt.txt"
        prompt_file.write_text("Analyze {IMAGE_COUNT} images.", encoding="utf-8")

        assert load_prompt(str(prompt_file)) == "Analyze {IMAGE_COUNT} images."

    def test_python_module_with_get_prompt(self, tmp_path):
        prompt_file = tmp_path / "prompt.py"
        prompt_file.write_text("def get_prompt():\n    return 'from module'\n", encoding="utf-8")

        assert load_prompt(str(prompt_file)) == "from module"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_prompt(str(tmp_path / "missing.txt"))


class TestFewShotExamples:
    def test_loads_valid_and_skips_invalid(self, tmp_path):
        few_shot = tmp_path / "few_shot.yaml"
        few_shot.write_text(
            "examples:\n"
            "  - role: user\n"
            "    content: Analyze these 2 images\n"
            "  - role: narrator\n"
            "    content: ignored\n"
            "  - role: assistant\n"
            "    content: '{\"individual_analyses\": []}'\n",
            encoding="utf-8",
        )

        examples = load_few_shot_examples(str(few_shot))

        assert [e.role for e in examples] == ["user", "assistant"]
        assert format_few_shot_for_api(examples)[0] == {"role": "user", "content": "Analyze these 2 images"}

    def test_missing_file_returns_empty_list(self, tmp_path):
        assert load_few_shot_examples(str(tmp_path / "none.yaml")) == []

    def test_malformed_yaml(self, tmp_path):
        few_shot = tmp_path / "bad.yaml"
        few_shot.write_text("examples: [unclosed", encoding="utf-8")

        with pytest.raises(ValueError, match="Invalid YAML"):
            load_few_shot_examples(str(few_shot))

    def test_format_for_api(self):
        examples = [FewShotExample(role="assistant", content="{}")]

        assert format_few_shot_for_api(examples) == [{"role": "assistant", "content": "{}"}]
