"""Domain knowledge for the Spinel panel: skill document and package manifest."""

from .skills_source import (
    SkillSource,
    get_skill_source,
    parse_requirements,
    strip_frontmatter,
)
