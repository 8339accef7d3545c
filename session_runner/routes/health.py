"""Session Runner - Health Route"""

from fastapi import APIRouter

from session_runner.config import settings

router = APIRouter()


@router.get("/health")
async def health():
    return {
        'status': 'ok',
        'base_dir': str(settings.BASE_DIR),
        'base_dir_exists': settings.BASE_DIR.is_dir(),
        'required_packages': [p.name for p in settings.REQUIRED_PACKAGES],
    }
