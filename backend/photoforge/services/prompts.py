from photoforge.schemas.contracts import SceneConfig

LEADING_INSTRUCTION = "Generate a new image."
TRAILING_INSTRUCTION = "Make sure the output is a high quality image, not a text description."

SCENE_TYPE_CLAUSES = {
    "portrait_enhance": (
        "Based on this portrait photo, produce a high quality improved version with attention to "
        "facial detail, natural lighting and a professional photographic look."
    ),
    "landscape_enhance": (
        "Based on this landscape photo, produce a more beautiful version with richer colour "
        "saturation, stronger contrast and better composition."
    ),
    "style_transfer": (
        "Transform this image into an artistic style while keeping the main subject recognisable "
        "and adding creative elements."
    ),
    "creative_design": (
        "Create an imaginative new image from this picture that blends modern design elements "
        "and visual effects."
    ),
    "business_use": (
        "Produce a professional version of this image suitable for commercial use, improving "
        "overall quality and business value."
    ),
}
GENERIC_CLAUSE = "Based on this image, generate an improved new image."


def build_prompt(scene: SceneConfig, user_prompt: str = "") -> str:
    parts = [
        LEADING_INSTRUCTION,
        scene.description,
        SCENE_TYPE_CLAUSES.get(scene.type, GENERIC_CLAUSE),
        user_prompt,
        TRAILING_INSTRUCTION,
    ]
    return " ".join(part.strip() for part in parts if part and part.strip())
