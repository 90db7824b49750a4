from .config import Settings
from .fal_video import FalVideoProvider
from .moderation import OpenAIModerationGate
from .openai_images import OpenAIImageProvider


class ProviderFactory:
    @staticmethod
    def image_provider(settings: Settings):
        return OpenAIImageProvider(api_key=settings.openai_api_key)

    @staticmethod
    def video_provider(settings: Settings):
        return FalVideoProvider(api_key=settings.fal_key)

    @staticmethod
    def moderation_gate(settings: Settings):
        return OpenAIModerationGate(
            api_key=settings.openai_api_key,
            environment=settings.environment,
            skip=settings.skip_moderation,
        )

    @staticmethod
    def status(settings: Settings) -> dict:
        """Which collaborators have credentials, for GET /workflow/health."""
        return {
            "image": {"provider": OpenAIImageProvider.provider_id, "configured": bool(settings.openai_api_key)},
            "video": {"provider": FalVideoProvider.provider_id, "configured": bool(settings.fal_key)},
            "moderation": {
                "configured": bool(settings.openai_api_key),
                "skip": settings.skip_moderation and settings.is_development,
            },
            "storage": {"r2": settings.r2_configured},
            "database": {"supabase": settings.supabase_configured, "redis": bool(settings.redis_url)},
        }
