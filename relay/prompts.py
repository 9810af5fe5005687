from __future__ import annotations

from typing import List

VARIATION_COUNT = 16

CHARACTERS = [
    "Monkey D. Luffy", "Roronoa Zoro", "Nami", "Usopp", "Sanji",
    "Tony Tony Chopper", "Nico Robin", "Franky", "Brook", "Jimbei",
    "Shanks", "Portgas D. Ace", "Trafalgar Law", "Boa Hancock",
]

STYLES = [
    "Eiichiro Oda art style",
    "official One Piece manga style",
    "vibrant anime colors",
    "dynamic shonen action pose",
    "detailed line art",
    "bold inking style",
    "color spread style",
    "volume cover art style",
    "Wanted poster style",
    "anime key visual style",
]

SCENES = [
    "on the Thousand Sunny",
    "battle scene",
    "Devil Fruit power activation",
    "in the Grand Line",
    "at Marineford",
    "in Wano Country",
    "with the Straw Hat crew",
    "using Haki",
    "in a dramatic close-up",
    "laughing together",
]


def build_variations(base_prompt: str, character: str = "", scene_type: str = "", count: int = VARIATION_COUNT) -> List[str]:
    """Cycle characters, scenes and styles around the user's prompt."""
    characters = [character] if character else CHARACTERS
    scenes = [scene_type] if scene_type else SCENES

    variations = []
    for i in range(count):
        char = characters[i % len(characters)]
        style = STYLES[i % len(STYLES)]
        scene = scenes[i % len(scenes)]
        prompt = f"{char}, {base_prompt}, {scene}, {style}, official One Piece artwork"
        prompt += ", detailed anime illustration, vibrant colors, dynamic composition"
        variations.append(prompt)
    return variations
