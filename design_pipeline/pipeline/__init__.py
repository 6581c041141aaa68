"""
Design Processing Pipeline

Three sequential stages per job:
1. Generation - Gemini image model (mandatory)
2. Background removal - Picsart (optional, per job)
3. 2x Upscaling - Picsart (optional when Picsart is configured)
"""
