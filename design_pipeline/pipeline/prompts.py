"""Prompt text sent to the generative image model."""

from typing import Optional

INSTRUCTION_PREAMBLE = "\n".join([
    "You are an expert apparel graphic designer. Follow ALL constraints strictly:",
    "- Use the uploaded image ONLY as inspiration for motif, silhouette, and palette.",
    "- OUTPUT: a single isolated design suitable for printing on apparel.",
    "- No mockups, no garment, no model, no scene.",
    "- NO text, letters, numbers, watermarks, brand marks, or logos.",
    "- Clean contours, large readable shapes; keep style simple and legible.",
    "",
    "If the user asks for a mockup or scene, IGNORE that and produce only the isolated design.",
])

DEFAULT_DESIGN_PROMPT = """Role
You are an expert conceptual graphic designer. Create a new, original graphic inspired by an uploaded reference image.

Do this silently
Analyse the reference internally and do not output your reasoning: subject and key parts, style family and rendering method, composition and silhouette, colour relationships and value contrast, mood and era cues.

Creative mandate
Produce a design that feels like a close cousin to the reference, not a sibling, with roughly 25 to 35 percent novelty. Keep the subject category, the broad style family and the general compositional balance, but change specific details so the result is clearly new.

Required variation
Make at least 3 meaningful changes across different axes:
1. Subject pose or angle
2. Feature treatment (line weight, texture, edge quality, detail density)
3. Secondary elements (swap or reposition props and background motifs)
4. Composition spacing (scale, spacing, overlap, framing)
5. Colour rewrite (at least two new hues or a shifted temperature/value structure)
6. Stylization tweak (inkier lines, softer grain, halftone)

Hard constraints
- Do not trace or replicate shapes, contours, or textures one-to-one
- Do not reproduce the exact pose, element arrangement, or colour codes
- No text, logos, signatures, watermarks, or brand identifiers

Output specs
- Single, isolated design centred on a pure white background
- Clear silhouette with large, readable shapes for apparel printing
- High-resolution raster suitable for print

Deliver
Generate 1 version that meets the above rules."""


def build_generation_prompt(user_prompt: Optional[str] = None) -> str:
    """Wrap the user's instructions (or the default brief) in the preamble."""
    instructions = (user_prompt or "").strip() or DEFAULT_DESIGN_PROMPT
    return f"{INSTRUCTION_PREAMBLE}\n\nUser instructions:\n{instructions}"
