from typing import Dict

from pydantic import BaseModel


class AgentProfile(BaseModel):
    role: str
    name: str
    full_name: str
    specialty: str
    tagline: str = ""


# Human-facing personas layered on top of the internal role identifiers.
AGENT_PROFILES: Dict[str, AgentProfile] = {
    "analyst": AgentProfile(
        role="analyst",
        name="Iris",
        full_name="Dr. Iris Chen",
        specialty="Research Analysis",
        tagline="The methodology section is where papers live or die.",
    ),
    "architect": AgentProfile(
        role="architect",
        name="Alex",
        full_name="Alex Rivera",
        specialty="Course Design",
        tagline="Boring education is a crime.",
    ),
    "scholar": AgentProfile(
        role="scholar",
        name="Nakamura",
        full_name="Prof. Nakamura",
        specialty="Domain Expertise",
    ),
}


def get_profile(role: str) -> AgentProfile:
    return AGENT_PROFILES.get(role) or AgentProfile(role=role, name=role, full_name=role, specialty="Agent")


def display_name(role: str) -> str:
    return get_profile(role).name
