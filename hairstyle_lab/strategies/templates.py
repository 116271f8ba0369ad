"""Instruction templates: the seed catalog, per-session dynamic templates and
the slot-based genome used to synthesize replacements during evolution."""

from __future__ import annotations

import time
from typing import Dict, List, Mapping, Optional, Sequence

from hairstyle_lab.db.repo.interfaces import DEFAULT_MODEL, NEUTRAL_SCORE, Strategy, new_id
from hairstyle_lab.rng import DeterministicRNG

Genome = Dict[str, str]

SEED_TEMPLATES: tuple[tuple[str, str], ...] = (
    (
        "explicit-description",
        """Look at the reference hairstyle in the second image: It has textured, messy, spiky styling with volume on top, tousled appearance, and blonde highlights throughout.

Now, take the person in the first image and give them EXACTLY this hairstyle. Change the hair cut, color, length, texture, and styling to match the reference COMPLETELY. Make it dramatic and obvious.

The face, skin, clothing and background should stay the same. Only change the hair.""",
    ),
    (
        "step-by-step",
        """Task: Hairstyle transformation

Step 1: Identify the person in the first image
Step 2: Analyze the hairstyle in the second reference image (spiky, textured, blonde highlights, messy styling)
Step 3: Remove the current hair from person in first image
Step 4: Apply the reference hairstyle from second image onto person from first image
Step 5: Match the color, texture, length, and styling EXACTLY

Result: Person from image 1 with hairstyle from image 2. Face unchanged.""",
    ),
    (
        "aggressive-transform",
        """TRANSFORM THIS HAIR COMPLETELY.

Original: Image 1 - person with current hairstyle
Reference: Image 2 - target hairstyle to achieve

CHANGE THE HAIR TO MATCH IMAGE 2:
- Spiky, textured, messy styling
- Blonde color with highlights
- Medium length with volume
- Tousled, pieced-out texture

DO NOT be subtle. Make the change DRAMATIC and OBVIOUS. The hair should look completely different.
Face, body, clothing, background = keep identical.
Hair = make it match reference completely.""",
    ),
    (
        "photo-editor",
        """You are a professional photo editor. Edit the first photo by changing only the hair.

TARGET HAIRSTYLE (from image 2):
- Cut: Medium length, textured layers
- Color: Blonde with highlights
- Style: Spiky, messy, tousled
- Texture: Pieced out, volume on top

Apply this hairstyle to the person in image 1. Make it look natural but clearly different. This is a hairstyle preview/mockup.""",
    ),
)

DYNAMIC_TEMPLATE = (
    "Transform the person's hairstyle to match the reference hairstyle exactly. "
    "Keep their face, skin tone, and background the same. Only change the hair to match the reference."
)
DEFAULT_REFERENCE_DESCRIPTION = "reference hairstyle"

# slot -> option id -> text; slots are composed in this order
GENOME_SLOTS: Mapping[str, Mapping[str, str]] = {
    "role": {
        "editor": "You are a professional photo editor working on a hairstyle preview.",
        "stylist": "You are an expert hair stylist creating a realistic makeover preview.",
        "direct": "Hairstyle transformation task.",
        "retoucher": "You are a high-end retoucher who specializes in hair replacement.",
    },
    "task": {
        "match": "Give the person in the first image the exact hairstyle shown in the second image.",
        "steps": (
            "Step 1: Study the hairstyle in the second image. "
            "Step 2: Remove the current hair of the person in the first image. "
            "Step 3: Apply the reference hairstyle to that person."
        ),
        "replace": "Replace the hair of the person in image 1 with the hair from image 2.",
        "describe": (
            "Describe to yourself the cut, color, length and texture of the reference hair, "
            "then render exactly that hair on the person in the first image."
        ),
    },
    "emphasis": {
        "dramatic": "Do NOT be subtle. The change must be dramatic and obvious.",
        "complete": "Match color, length, texture and styling COMPLETELY.",
        "natural": "Make it look natural but clearly different from the original hair.",
        "attributes": "Pay special attention to hair color and overall length; both must match the reference.",
    },
    "preservation": {
        "face": "Keep the face, skin tone and expression identical.",
        "everything": "Face, body, clothing and background must stay exactly the same.",
        "identity": "The person must remain fully recognizable. Only the hair may change.",
    },
    "closing": {
        "none": "",
        "result": "Result: the person from image 1 wearing the hairstyle from image 2.",
        "mockup": "This is a hairstyle preview mockup.",
        "check": "Before answering, check that the new hair clearly differs from the original hair.",
    },
}


def default_strategies() -> list[Strategy]:
    """The fixed seed set, in catalog order, all neutral and active."""

    return [
        Strategy(
            id=f"default-{index}",
            name=name,
            instruction_template=template,
            score=NEUTRAL_SCORE,
            model=DEFAULT_MODEL,
            origin="seed",
        )
        for index, (name, template) in enumerate(SEED_TEMPLATES, start=1)
    ]


def dynamic_strategies(
    session_id: str,
    count: int,
    *,
    reference_description: str = DEFAULT_REFERENCE_DESCRIPTION,
    model: str = DEFAULT_MODEL,
    timestamp_ms: Optional[int] = None,
) -> list[Strategy]:
    """Per-session strategies created for one reference image."""

    stamp = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    return [
        Strategy(
            id=new_id(),
            name=f"dynamic-{stamp}-{index}",
            instruction_template=DYNAMIC_TEMPLATE,
            model=model,
            origin="dynamic",
            reference_description=reference_description,
            created_for_session=session_id,
        )
        for index in range(max(0, count))
    ]


def compose_template(genes: Mapping[str, str]) -> str:
    lines: List[str] = []
    for slot, options in GENOME_SLOTS.items():
        option_id = genes.get(slot)
        if option_id not in options:
            raise KeyError(f"unknown option {option_id!r} for slot {slot!r}")
        text = options[option_id]
        if text:
            lines.append(text)
    return "\n\n".join(lines)


def random_genome(rng: DeterministicRNG) -> Genome:
    return {slot: rng.choice(sorted(options)) for slot, options in GENOME_SLOTS.items()}


def is_valid_genome(genes: Optional[Mapping[str, str]]) -> bool:
    if not isinstance(genes, Mapping):
        return False
    return all(genes.get(slot) in options for slot, options in GENOME_SLOTS.items())


def mutate_genome(genes: Mapping[str, str], rng: DeterministicRNG, rate: float) -> Genome:
    child: Genome = dict(genes)
    for slot, options in GENOME_SLOTS.items():
        if rng.maybe(rate):
            alternatives = sorted(option for option in options if option != child.get(slot))
            if alternatives:
                child[slot] = rng.choice(alternatives)
    return child


def crossover_genomes(a: Mapping[str, str], b: Mapping[str, str], rng: DeterministicRNG) -> Genome:
    child: Genome = {}
    for slot in GENOME_SLOTS:
        if rng.maybe(0.5):
            child[slot] = a.get(slot, b.get(slot))
        else:
            child[slot] = b.get(slot, a.get(slot))
    return child


def genome_key(genes: Mapping[str, str]) -> tuple[str, ...]:
    return tuple(str(genes.get(slot)) for slot in GENOME_SLOTS)


def synthesize_genomes(
    parents: Sequence[Mapping[str, str]],
    count: int,
    rng: DeterministicRNG,
    *,
    mutation_rate: float,
    exclude: Sequence[Mapping[str, str]] = (),
) -> list[Genome]:
    """Breed ``count`` distinct genomes from ``parents`` (random when none)."""

    seen = {genome_key(genes) for genes in exclude}
    children: list[Genome] = []
    attempts = 0
    while len(children) < count:
        attempts += 1
        if len(parents) >= 2:
            first, second = rng.parents(list(parents))
            child = mutate_genome(crossover_genomes(first, second, rng), rng, mutation_rate)
        elif parents:
            child = mutate_genome(parents[0], rng, max(mutation_rate, 0.5))
        else:
            child = random_genome(rng)
        key = genome_key(child)
        # duplicates are tolerated once the option space looks exhausted
        if key in seen and attempts < count * 20:
            continue
        seen.add(key)
        children.append(child)
    return children


def evolved_strategy(genes: Mapping[str, str], *, model: str = DEFAULT_MODEL, cycle: int = 0) -> Strategy:
    strategy_id = new_id()
    return Strategy(
        id=strategy_id,
        name=f"evolved-c{cycle}-{strategy_id[:6]}",
        instruction_template=compose_template(genes),
        model=model,
        origin="evolved",
        genes=dict(genes),
    )


__all__ = [
    "DEFAULT_REFERENCE_DESCRIPTION",
    "DYNAMIC_TEMPLATE",
    "GENOME_SLOTS",
    "Genome",
    "SEED_TEMPLATES",
    "compose_template",
    "crossover_genomes",
    "default_strategies",
    "dynamic_strategies",
    "evolved_strategy",
    "genome_key",
    "is_valid_genome",
    "mutate_genome",
    "random_genome",
    "synthesize_genomes",
]
