"""Developer Agent - implements a single screen in the selected framework."""

import re
from typing import Dict

from src.build_engine.agents.base import COMPLETION_SIGNAL, AgentContext, TeamAgent
from src.domain.schema import AgentType, Framework


def _pascal(screen: str) -> str:
    return re.sub(r"\s+", "", screen)


def _kebab(screen: str) -> str:
    return re.sub(r"\s+", "-", screen.lower())


def _snake(screen: str) -> str:
    return re.sub(r"\s+", "_", screen.lower())


FILE_EXTENSIONS: Dict[Framework, str] = {
    Framework.REACT: "jsx",
    Framework.NEXTJS: "tsx",
    Framework.VUE: "vue",
    Framework.FLUTTER: "dart",
    Framework.HTML: "html",
}


def framework_guidance(framework: Framework, screen: str) -> str:
    """Framework-specific implementation conventions for a screen."""
    if framework == Framework.NEXTJS:
        return (
            f"**Next.js** - Create a page file (e.g., pages/{_kebab(screen)}.tsx)\n"
            "   - Use Next.js conventions (getStaticProps if needed)\n"
            "   - Use Tailwind CSS or CSS modules\n"
            "   - Create components in components/ folder"
        )
    if framework == Framework.VUE:
        return (
            f"**Vue.js** - Create a component file (e.g., {_pascal(screen)}.vue)\n"
            "   - Use Vue 3 Composition API\n"
            "   - Include <template>, <script setup>, and <style scoped>\n"
            "   - Use Pinia for state if needed"
        )
    if framework == Framework.FLUTTER:
        return (
            f"**Flutter** - Create a screen widget (e.g., {_snake(screen)}_screen.dart)\n"
            "   - Use StatelessWidget or StatefulWidget as appropriate\n"
            "   - Use Material Design widgets\n"
            "   - Keep widgets composable and reusable"
        )
    if framework == Framework.HTML:
        base = _kebab(screen)
        return (
            "**HTML/CSS/JS** - Create files:\n"
            f"   - {base}.html (structure)\n"
            f"   - {base}.css (styling)\n"
            f"   - {base}.js (interactivity)\n"
            "   - Use modern CSS (flexbox, grid) and vanilla JS"
        )
    return (
        f"**React** - Create a component file (e.g., {_pascal(screen)}.jsx)\n"
        "   - Use functional components with hooks\n"
        "   - Use CSS modules or styled-components for styling\n"
        "   - Export the component as default"
    )


class DeveloperAgent(TeamAgent):
    """Developer building the screen from the UX requirements."""

    AGENT_TYPE = AgentType.DEVELOPER
    ROLE_NAMES = ("Developer", "Dev")

    def status(self, context: AgentContext) -> str:
        return f"Implementing screen with {context.framework.value.upper()}..."

    def build_prompt(self, context: AgentContext) -> str:
        framework = context.framework
        extension = FILE_EXTENSIONS[framework]
        return f"""DEVELOPER AGENT - Screen: "{context.screen}" (Iteration {context.iteration})

The UX Designer has prepared requirements (see previous message).

FRAMEWORK: **{framework.value.upper()}**
{framework_guidance(framework, context.screen)}

YOUR TASK: Implement ONLY this single screen by CREATING ACTUAL FILES.

IMPLEMENTATION RULES:
1. Frontend First - focus on UI/UX, use mock/hardcoded data
2. Make it Look Real - use realistic placeholder content
3. No Backend - don't build APIs, auth, or database connections
4. One Screen Only - build just "{context.screen}"
5. Production Quality - make it look polished and professional
6. Framework Specific - follow {framework.value} best practices

CREATE FILES using this format:
<write_file path="src/components/{_pascal(context.screen)}.{extension}">
// Your component code here
</write_file>

You MUST create at least one file. Include all necessary code (component, styles, etc).

After creating the files, end with:
"{COMPLETION_SIGNAL} Development complete for '{context.screen}'. Ready for user feedback."
"""
