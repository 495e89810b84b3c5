"""LLM-powered field mapping suggestions."""

import json
import logging
import os
import re
from typing import Any, Dict, List, Optional

from ..models.mapping import MappingSuggestion

logger = logging.getLogger(__name__)


API_KEY_ENV_VARS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
}

DEFAULT_MODELS = {
    "openai": "gpt-4o",
    "anthropic": "claude-3-5-sonnet-latest",
    "google": "gemini-1.5-pro",
}


class LLMMappingAdvisor:
    """
    Asks an LLM to map source fields onto destination fields.

    Used by ``FieldMapper`` as an optional advisor next to its heuristic
    matcher. Errors propagate to the caller, which decides how to degrade.

    Supports OpenAI, Anthropic and Google providers; each client library is
    imported on first use.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        provider: str = "openai",
        transform_names: Optional[List[str]] = None
    ):
        """
        Initialize the advisor.

        Args:
            api_key: API key for the LLM provider (defaults to the provider's env var)
            model: Model to use (defaults per provider)
            provider: LLM provider (openai, anthropic, google)
            transform_names: Transformation rule names the model may propose
        """
        if provider not in API_KEY_ENV_VARS:
            raise ValueError(f"Unsupported provider: {provider}")
        self.provider = provider
        self.api_key = api_key or os.environ.get(API_KEY_ENV_VARS[provider])
        self.model = model or DEFAULT_MODELS[provider]
        self.transform_names = transform_names or []

    def suggest_mappings(
        self,
        source_fields: List[str],
        destination_fields: List[str],
        required_fields: Optional[List[str]] = None,
        object_type: Optional[str] = None,
        sample_records: Optional[List[Dict[str, Any]]] = None
    ) -> List[MappingSuggestion]:
        """
        Suggest field mappings.

        Args:
            source_fields: Source field names
            destination_fields: Destination field names
            required_fields: Destination fields that must be mapped
            object_type: Object type name for context
            sample_records: Optional sample source records for context

        Returns:
            List of mapping suggestions
        """
        if not self.api_key:
            raise RuntimeError(f"No API key configured for {self.provider}")

        prompt = self._build_mapping_prompt(
            source_fields, destination_fields, required_fields or [], object_type, sample_records
        )
        response = self._call_llm(prompt, expect_json=True)
        suggestions = self._parse_mapping_response(response)
        logger.info(f"{self.provider} suggested {len(suggestions)} mappings for {object_type or 'object'}")
        return suggestions

    def _build_mapping_prompt(
        self,
        source_fields: List[str],
        destination_fields: List[str],
        required_fields: List[str],
        object_type: Optional[str],
        sample_records: Optional[List[Dict[str, Any]]]
    ) -> str:
        """Build prompt for mapping suggestions."""
        prompt = f"""
You are a CRM data migration expert. Map source fields to destination fields.

Object type: {object_type or "unknown"}

Source fields:
{json.dumps(source_fields, indent=2)}

Destination fields:
{json.dumps(destination_fields, indent=2)}

Required destination fields (map these if at all possible):
{json.dumps(required_fields, indent=2)}

"""

        if sample_records:
            prompt += f"""
Sample Source Data:
{json.dumps(sample_records[:3], indent=2, default=str)}

"""

        prompt += """
Return a JSON object:
{
    "mappings": [
        {
            "source_field": "field name in source",
            "destination_field": "field name in destination",
            "transformation_rule": "optional pipe-chained rule, e.g. trim|lowercase",
            "confidence": 0.0-1.0,
            "reasoning": "Why this mapping makes sense"
        }
    ]
}

Only use field names from the lists above. Map each destination field at most once.
"""
        if self.transform_names:
            prompt += f"\nAvailable transformation rule steps: {', '.join(self.transform_names)}\n"

        return prompt

    def _call_llm(self, prompt: str, expect_json: bool = False) -> Any:
        """Call the LLM API."""
        if self.provider == "openai":
            return self._call_openai(prompt, expect_json)
        elif self.provider == "anthropic":
            return self._call_anthropic(prompt, expect_json)
        elif self.provider == "google":
            return self._call_google(prompt, expect_json)
        else:
            raise ValueError(f"Unsupported provider: {self.provider}")

    def _call_openai(self, prompt: str, expect_json: bool = False) -> Any:
        """Call OpenAI API."""
        try:
            import openai
        except ImportError:
            raise ImportError("openai package required for OpenAI mapping suggestions")

        client = openai.OpenAI(api_key=self.api_key)

        kwargs = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0.2,
            "max_tokens": 4096,
        }

        if expect_json:
            kwargs["response_format"] = {"type": "json_object"}

        response = client.chat.completions.create(**kwargs)
        content = response.choices[0].message.content

        if expect_json:
            return json.loads(content)
        return content

    def _call_anthropic(self, prompt: str, expect_json: bool = False) -> Any:
        """Call Anthropic API."""
        try:
            import anthropic
        except ImportError:
            raise ImportError("anthropic package required for Anthropic mapping suggestions")

        client = anthropic.Anthropic(api_key=self.api_key)

        response = client.messages.create(
            model=self.model,
            max_tokens=4096,
            messages=[{"role": "user", "content": prompt}]
        )

        content = response.content[0].text
        if expect_json:
            return self._extract_json(content)
        return content

    def _call_google(self, prompt: str, expect_json: bool = False) -> Any:
        """Call Google Gemini API."""
        try:
            import google.generativeai as genai
        except ImportError:
            raise ImportError("google-generativeai package required for Google mapping suggestions")

        genai.configure(api_key=self.api_key)
        model = genai.GenerativeModel(self.model)

        response = model.generate_content(prompt)
        content = response.text
        if expect_json:
            return self._extract_json(content)
        return content

    def _extract_json(self, content: str) -> Any:
        """Pull the JSON payload out of a free-text model reply."""
        json_match = re.search(r'[\[{][\s\S]*[\]}]', content)
        if not json_match:
            raise ValueError("LLM response contained no JSON")
        return json.loads(json_match.group())

    def _parse_mapping_response(self, response: Any) -> List[MappingSuggestion]:
        """Parse LLM response into mapping suggestions."""
        if isinstance(response, dict):
            response = response.get("mappings", response.get("suggestions", []))

        if not isinstance(response, list):
            return []

        suggestions = []
        for item in response:
            if not isinstance(item, dict):
                continue
            # Older prompts used target_field
            if "destination_field" not in item and "target_field" in item:
                item = dict(item, destination_field=item["target_field"])
            if not item.get("source_field") or not item.get("destination_field"):
                continue
            suggestion = MappingSuggestion.from_dict({"confidence": 0.8, **item})
            if not suggestion.reason:
                suggestion.reason = f"Suggested by {self.provider}"
            suggestions.append(suggestion)

        return suggestions
