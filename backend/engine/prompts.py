"""
Prompt supplier — hands out prompts that have not been used in a session yet.

The session remembers which prompt ids it has drawn (used_prompt_ids); once the
bank is exhausted for that session any prompt may repeat.
"""
import random
from typing import List, Iterable, Optional, Tuple

from models.game import Prompt


DEFAULT_PROMPTS: List[Tuple[str, str]] = [
    ("What is the best song from the 90s?", "time"),
    ("What song would you play at a wedding?", "event"),
    ("What song would aliens enjoy the most?", "fun"),
    ("What song represents your personality?", "personal"),
    ("What's the best song to listen to on a road trip?", "activity"),
    ("What song would you play at a beach party?", "event"),
    ("What song would you use as your theme song?", "personal"),
    ("What song makes you feel nostalgic?", "emotion"),
    ("What song would you play to introduce someone to your favorite genre?", "genre"),
    ("What's the best song for a workout?", "activity"),
    ("What song would you play to cheer someone up?", "emotion"),
    ("What song would be playing during the climax of a movie about your life?", "personal"),
    ("What song would you play on a first date?", "event"),
    ("What's the best song released in the last year?", "time"),
    ("What song would you play to put a baby to sleep?", "activity"),
    ("What song reminds you of summer?", "season"),
    ("What song would play during the apocalypse?", "fun"),
    ("What song would you choose for your grand entrance?", "personal"),
    ("What song best represents the 2010s?", "time"),
    ("What song would you play to introduce Earth to aliens?", "fun"),
    ("What song would you play at your graduation party?", "event"),
    ("What song makes you want to dance no matter what?", "emotion"),
    ("What song would be perfect for a rainy day?", "weather"),
    ("What's the best song for a karaoke night?", "activity"),
    ("What song would you play during a zombie apocalypse?", "fun"),
    ("What song best represents your country?", "place"),
    ("What song would you play to calm yourself down?", "emotion"),
    ("What song would you want played at your funeral?", "event"),
    ("What song would you play to motivate yourself for a big challenge?", "activity"),
    ("What song best represents the spirit of the 80s?", "time"),
]


class PromptBank:

    def __init__(
        self,
        prompts: Optional[Iterable[Prompt]] = None,
        rng: Optional[random.Random] = None,
    ):
        if prompts is None:
            prompts = [
                Prompt(id=f"q{i:03d}", text=text, category=category)
                for i, (text, category) in enumerate(DEFAULT_PROMPTS, start=1)
            ]
        self.prompts: List[Prompt] = list(prompts)
        if not self.prompts:
            raise ValueError("PromptBank needs at least one prompt")
        self._rng = rng or random.Random()

    def draw_unused(self, used_ids: Iterable[str]) -> Prompt:
        """Random prompt not in used_ids; any prompt once all have been used."""
        used = set(used_ids)
        pool = [p for p in self.prompts if p.id not in used] or self.prompts
        return self._rng.choice(pool).model_copy()


prompt_bank = PromptBank()
