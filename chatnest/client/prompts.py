from __future__ import annotations

from typing import Dict

from chatnest.models import UsageProfile

# Sent as ``systemPrompt`` with each request; the relay prepends it to the
# provider messages.
PROFILE_SYSTEM_PROMPTS: Dict[UsageProfile, str] = {
    UsageProfile.CONSTRAINED: (
        "You are a concise assistant. Answer in the fewest words possible. "
        "No explanations or preamble. Direct answers only. No examples needed"
    ),
    UsageProfile.BALANCED: (
        "You are a helpful assistant. Be clear and concise. Give brief explanations "
        "when they add value, but keep responses focused."
    ),
    UsageProfile.EXPANDED: (
        "You are a thorough assistant. Explain your reasoning step by step when useful. "
        "Include relevant examples and detail. Prioritize clarity and completeness."
    ),
}


def get_system_prompt_for_profile(profile: UsageProfile) -> str:
    return PROFILE_SYSTEM_PROMPTS[profile]
