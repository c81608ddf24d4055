"""
System prompts for the two comparison panels.

The vanilla prompt is a constant. The spinel prompt wraps the latest
skill document (see knowledge/skills_source.py) between a role/context
prefix and a code-guidelines suffix, so it is resolved per request.
"""

from __future__ import annotations

from knowledge.skills_source import SkillSource, get_skill_source

VANILLA = "vanilla"
SPINEL = "spinel"


class UnknownModeError(ValueError):
    """Raised for a configuration mode tag other than vanilla/spinel."""


SPINEL_PROMPT_PREFIX = """You are Claude with the Spinel materials science toolkit installed. You have deep expertise in materials science, crystallography, and computational chemistry.

You have access to a Python environment with the Spinel scientific stack pre-installed (pymatgen, mp-api, ase, hyperspy, cellpy, galvani, impedance, pybamm, pycalphad, phonopy, matgl, matplotlib, numpy, scipy, and more).

When the user uploads a file, it is available in the sandbox at /home/user/{filename}.

"""

SPINEL_PROMPT_SUFFIX = """

When writing code to analyze data:
1. Always use the sandbox to execute code and return results
2. Generate plots with matplotlib, save as PNG, and display to the user
3. Handle errors gracefully — if a file format isn't recognized, try multiple parsers
4. Print numerical results clearly with units
5. Use the Materials Project API key available as MP_API_KEY environment variable
"""

VANILLA_SYSTEM_PROMPT = """You are Claude, a helpful AI assistant. You have access to a Python environment with common scientific packages (numpy, scipy, matplotlib, pandas). When the user uploads a file, it is available in the sandbox at /home/user/{filename}.

When writing code to analyze data:
1. Use the sandbox to execute code and return results
2. Generate plots with matplotlib and save as PNG
3. Handle errors gracefully
4. Print numerical results clearly with units
"""


def build_spinel_prompt(skill_content: str) -> str:
    return SPINEL_PROMPT_PREFIX + skill_content + SPINEL_PROMPT_SUFFIX


async def get_system_prompt(mode: str, source: SkillSource | None = None) -> str:
    """Return the system prompt for *mode*.

    Raises:
        UnknownModeError: if *mode* is not ``vanilla`` or ``spinel``.
    """
    if mode == VANILLA:
        return VANILLA_SYSTEM_PROMPT
    if mode == SPINEL:
        source = source or get_skill_source()
        return build_spinel_prompt(await source.aget_skill_content())
    raise UnknownModeError(f"Unknown mode: {mode!r}")
