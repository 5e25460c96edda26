"""Technology stack catalog used to enrich requests."""

from dataclasses import dataclass, field
from typing import Iterable

from promptrefiner.agents.types import QuestionKind, RefinementQuestion

S = QuestionKind.SPECIFICATION
SC = QuestionKind.SCENARIO


@dataclass(frozen=True)
class StackProfile:
    """
    Known questions, best practices and common issues for a technology.
    """

    stacks: tuple[str, ...]
    questions: tuple[RefinementQuestion, ...] = ()
    best_practices: tuple[str, ...] = field(default_factory=tuple)
    common_issues: tuple[str, ...] = field(default_factory=tuple)


def _q(
    qid: str,
    kind: QuestionKind,
    question: str,
    answers: Iterable[str],
    allow_custom: bool = False,
    required: bool = False,
    depends_on: Iterable[str] = (),
) -> RefinementQuestion:
    return RefinementQuestion(
        id=qid,
        kind=kind,
        question=question,
        answers=tuple(answers),
        allow_custom=allow_custom,
        required=required,
        depends_on=tuple(depends_on),
    )


STACK_PROFILES: dict[str, StackProfile] = {
    "React": StackProfile(
        stacks=("React",),
        questions=(
            _q("react-version", S, "Which React version are you working with?",
               ["React 18+", "React 17", "React 16", "Not sure"], allow_custom=True),
            _q("react-architecture", S, "What's your preferred React architecture?",
               ["Functional Components with Hooks", "Class Components", "Mixed approach"],
               allow_custom=True, required=True, depends_on=["react-version"]),
            _q("react-state", S, "How do you plan to manage state?",
               ["useState + useReducer", "Redux Toolkit", "Zustand", "Context API"],
               allow_custom=True, depends_on=["react-architecture"]),
        ),
        best_practices=(
            "Use functional components with hooks",
            "Implement proper TypeScript typing",
            "Follow React best practices for performance",
            "Consider code splitting for larger apps",
        ),
        common_issues=(
            "Props typing with TypeScript",
            "State management patterns",
            "Component re-rendering optimization",
            "Hook dependency arrays",
        ),
    ),
    "TypeScript": StackProfile(
        stacks=("TypeScript",),
        questions=(
            _q("typescript-experience", S, "What's your TypeScript experience level?",
               ["Beginner", "Intermediate", "Advanced", "Expert"], required=True),
            _q("typescript-strictness", S, "How strict should TypeScript configuration be?",
               ["Very strict (all strict checks)", "Moderately strict", "Lenient mode"],
               depends_on=["typescript-experience"]),
            _q("typescript-features", S, "Which TypeScript features are most important?",
               ["Type safety only", "Advanced types (generics, utilities)", "Decorators",
                "All features"],
               allow_custom=True, depends_on=["typescript-experience"]),
        ),
        best_practices=(
            "Use interfaces over types for object shapes",
            "Leverage TypeScript's type inference",
            "Create proper generic types",
            "Use strict mode configurations",
        ),
        common_issues=(
            "Typing React props",
            "Generic type parameters",
            "Union and intersection types",
            "Type assertion vs type guards",
        ),
    ),
    "Node.js": StackProfile(
        stacks=("Node.js",),
        questions=(
            _q("nodejs-version", S, "Which Node.js version are you targeting?",
               ["Node.js 20+ (LTS)", "Node.js 18 (LTS)", "Node.js 16 (LTS)", "Latest version"],
               required=True),
            _q("nodejs-framework", S, "What Node.js framework are you using?",
               ["Express.js", "Fastify", "NestJS", "Custom/Other"],
               allow_custom=True, depends_on=["nodejs-version"]),
            _q("nodejs-purpose", SC, "What's the main purpose of your Node.js application?",
               ["REST API", "GraphQL API", "Microservices", "CLI tool"],
               allow_custom=True, depends_on=["nodejs-framework"]),
        ),
        best_practices=(
            "Use async/await over callbacks",
            "Implement proper error handling",
            "Use environment variables for configuration",
            "Follow Node.js security best practices",
        ),
        common_issues=(
            "Callback hell vs Promises",
            "Error handling patterns",
            "Memory management",
            "Performance optimization",
        ),
    ),
    "Python": StackProfile(
        stacks=("Python",),
        questions=(
            _q("python-version", S, "Which Python version are you using?",
               ["Python 3.11+", "Python 3.10", "Python 3.9", "Not sure"], required=True),
            _q("python-framework", S, "What Python framework/library are you working with?",
               ["Django", "Flask", "FastAPI", "Pandas/NumPy"],
               allow_custom=True, depends_on=["python-version"]),
            _q("python-usecase", SC, "What type of Python development are you doing?",
               ["Web development", "Data science", "Machine learning", "Automation scripting"],
               allow_custom=True, depends_on=["python-framework"]),
        ),
        best_practices=(
            "Use type hints for better code documentation",
            "Follow PEP 8 style guidelines",
            "Use virtual environments for dependency management",
            "Implement proper exception handling",
        ),
        common_issues=(
            "Dependency management with pip/poetry",
            "Virtual environment setup",
            "Type hinting best practices",
            "Performance optimization",
        ),
    ),
    "Testing": StackProfile(
        stacks=("Jest", "Vitest", "PyTest", "Cypress", "Playwright"),
        questions=(
            _q("testing-type", S, "What type of testing do you need?",
               ["Unit testing only", "Integration testing", "E2E testing", "Full testing suite"],
               required=True),
            _q("testing-framework", S, "Which testing framework are you using?",
               ["Jest", "Vitest", "PyTest", "Custom/Other"],
               allow_custom=True, depends_on=["testing-type"]),
            _q("testing-coverage", S, "What's your target test coverage?",
               ["Above 90%", "70-90%", "50-70%", "Just critical paths"],
               depends_on=["testing-framework"]),
        ),
        best_practices=(
            "Write descriptive test names",
            "Follow AAA (Arrange-Act-Assert) pattern",
            "Mock external dependencies properly",
            "Test edge cases and error scenarios",
        ),
        common_issues=(
            "Mock setup and teardown",
            "Async testing patterns",
            "Test data management",
            "Coverage requirements",
        ),
    ),
    "Docker": StackProfile(
        stacks=("Docker",),
        questions=(
            _q("docker-purpose", SC, "What's the main purpose of using Docker?",
               ["Development environment", "Production deployment", "CI/CD pipeline",
                "Microservices"],
               required=True),
            _q("docker-type", S, "What type of Docker setup do you need?",
               ["Single container application", "Multi-container with Docker Compose",
                "Kubernetes deployment", "Development environment only"],
               depends_on=["docker-purpose"]),
            _q("docker-base-image", S, "What base image preference do you have?",
               ["Alpine Linux (lightweight)", "Ubuntu/Debian (full-featured)",
                "Distroless (minimal)", "Official language images"],
               depends_on=["docker-type"]),
        ),
        best_practices=(
            "Use multi-stage builds for smaller images",
            "Minimize layer count",
            "Use .dockerignore files",
            "Don't run as root user",
        ),
        common_issues=(
            "Image size optimization",
            "Volume mounting",
            "Network configuration",
            "Environment variable management",
        ),
    ),
    "PostgreSQL": StackProfile(
        stacks=("PostgreSQL",),
        questions=(
            _q("postgres-version", S, "Which PostgreSQL version are you using?",
               ["PostgreSQL 15+", "PostgreSQL 14", "PostgreSQL 13", "Older version"],
               required=True),
            _q("postgres-usecase", SC, "What's your primary use case for PostgreSQL?",
               ["OLTP application", "Analytics/Reporting", "Hybrid workload",
                "JSON document storage"],
               depends_on=["postgres-version"]),
            _q("postgres-orm", S, "How are you interacting with PostgreSQL?",
               ["Prisma", "SQLAlchemy", "Raw SQL", "Other ORM"],
               allow_custom=True, depends_on=["postgres-usecase"]),
        ),
        best_practices=(
            "Use appropriate indexes for query performance",
            "Implement proper connection pooling",
            "Use transactions for data consistency",
            "Regular database maintenance",
        ),
        common_issues=(
            "Query optimization",
            "Connection management",
            "Indexing strategies",
            "Migration management",
        ),
    ),
}

COMBINED_PROFILES: dict[str, StackProfile] = {
    "React+TypeScript": StackProfile(
        stacks=("React", "TypeScript"),
        questions=(
            _q("react-typescript-setup", S, "How are you setting up React with TypeScript?",
               ["Vite + React + TypeScript", "Next.js", "Create React App (TypeScript template)",
                "Custom Webpack config"],
               required=True),
            _q("react-typescript-state", S, "How will you handle state typing?",
               ["Strict typing with interfaces", "Type inference preferred", "Mixed approach"],
               depends_on=["react-typescript-setup"]),
        ),
        best_practices=(
            "Type props with interfaces",
            "Use proper generic types for hooks",
            "Leverage TypeScript for component prop validation",
        ),
        common_issues=(
            "Typing children props",
            "Generic component patterns",
            "Event handler typing",
            "Context provider typing",
        ),
    ),
    "Express.js+Node.js": StackProfile(
        stacks=("Node.js", "Express.js"),
        questions=(
            _q("express-typescript", S, "Are you using TypeScript with Express?",
               ["Yes, full TypeScript setup", "JavaScript with JSDoc", "Pure JavaScript"],
               required=True),
            _q("express-architecture", S, "What's your Express application architecture?",
               ["MVC pattern", "Modular with routers", "Microservices", "Simple monolith"],
               depends_on=["express-typescript"]),
        ),
        best_practices=(
            "Use Express Router for organization",
            "Implement middleware properly",
            "Use async/await with error handling",
            "Environment-based configuration",
        ),
        common_issues=(
            "Async middleware error handling",
            "Request/response typing",
            "Route organization",
            "Middleware order",
        ),
    ),
    "Node.js+React": StackProfile(
        stacks=("React", "Node.js"),
        questions=(
            _q("fullstack-type", S, "What type of full-stack application are you building?",
               ["SPA with REST API", "SSR application", "Static site generation",
                "Real-time application"],
               required=True),
            _q("fullstack-deployment", S, "How will you deploy this application?",
               ["Monolithic deployment", "Separate frontend/backend", "Serverless functions",
                "Containerized deployment"],
               depends_on=["fullstack-type"]),
        ),
        best_practices=(
            "API versioning",
            "CORS configuration",
            "Authentication between services",
            "Error handling across layers",
        ),
        common_issues=(
            "CORS configuration",
            "Authentication flow",
            "API communication patterns",
            "Deployment strategy",
        ),
    ),
}


def _combo_key(stacks: Iterable[str]) -> str:
    return "+".join(sorted(stacks))


def _profiles_for(stacks: Iterable[str]) -> list[StackProfile]:
    """
    Return individual profiles for the given stacks, in sorted stack order.

    Tags listed under a grouped profile (e.g. "PyTest" under "Testing") resolve
    to that profile; each profile appears once.
    """
    seen: set[str] = set()
    profiles: list[StackProfile] = []
    for stack in sorted(stacks):
        for key, profile in STACK_PROFILES.items():
            if key in seen:
                continue
            if stack == key or stack in profile.stacks:
                seen.add(key)
                profiles.append(profile)
    return profiles


def available_stacks() -> list[str]:
    """
    Return every technology tag the catalog knows about.

    Returns:
        list[str]: Sorted technology tags.
    """
    tags: set[str] = set(STACK_PROFILES)
    for profile in list(STACK_PROFILES.values()) + list(COMBINED_PROFILES.values()):
        tags.update(profile.stacks)
    return sorted(tags)


def _dedupe(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def get_best_practices(stacks: Iterable[str]) -> list[str]:
    """
    Collect best-practice notes for the selected stacks.

    Args:
        stacks (Iterable[str]): Selected technology tags.

    Returns:
        list[str]: Deduplicated notes, individual stacks first.
    """
    stacks = list(stacks)
    practices: list[str] = []
    for profile in _profiles_for(stacks):
        practices.extend(profile.best_practices)
    combo = COMBINED_PROFILES.get(_combo_key(stacks))
    if combo:
        practices.extend(combo.best_practices)
    return _dedupe(practices)


def get_common_issues(stacks: Iterable[str]) -> list[str]:
    """
    Collect common-issue notes for the selected stacks.

    Args:
        stacks (Iterable[str]): Selected technology tags.

    Returns:
        list[str]: Deduplicated notes, individual stacks first.
    """
    stacks = list(stacks)
    issues: list[str] = []
    for profile in _profiles_for(stacks):
        issues.extend(profile.common_issues)
    combo = COMBINED_PROFILES.get(_combo_key(stacks))
    if combo:
        issues.extend(combo.common_issues)
    return _dedupe(issues)


def sort_questions_by_dependencies(
    questions: list[RefinementQuestion],
) -> list[RefinementQuestion]:
    """
    Order questions so that each one follows the questions it depends on.

    Questions whose dependencies can never be satisfied (circular or missing)
    are appended in their original order.

    Args:
        questions (list[RefinementQuestion]): Questions to order.

    Returns:
        list[RefinementQuestion]: The ordered questions.
    """
    ordered: list[RefinementQuestion] = []
    placed: set[str] = set()
    remaining = list(questions)
    while remaining:
        ready = [q for q in remaining if all(dep in placed for dep in q.depends_on)]
        if not ready:
            ordered.extend(remaining)
            break
        for q in ready:
            ordered.append(q)
            placed.add(q.id)
            remaining.remove(q)
    return ordered


def get_contextual_questions(stacks: Iterable[str]) -> list[RefinementQuestion]:
    """
    Return catalog questions for the selected stacks.

    Args:
        stacks (Iterable[str]): Selected technology tags.

    Returns:
        list[RefinementQuestion]: Combined-stack questions first, then per-stack
            questions, ordered by dependencies.
    """
    stacks = list(stacks)
    questions: list[RefinementQuestion] = []
    combo = COMBINED_PROFILES.get(_combo_key(stacks))
    if combo:
        questions.extend(combo.questions)
    for profile in _profiles_for(stacks):
        questions.extend(profile.questions)
    return sort_questions_by_dependencies(questions)
