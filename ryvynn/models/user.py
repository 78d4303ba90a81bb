from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

from ryvynn.features.companion.personas import AvatarProfile


class Profile(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    display_name: str
    avatar: AvatarProfile
    stripe_customer_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @staticmethod
    def normalized_display_name(user_id: str, display_name: Optional[str] = None) -> str:
        if display_name and display_name.strip():
            return display_name.strip()
        # Deterministic fallback handle; truth posts never show it
        import hashlib
        h = hashlib.sha1(user_id.encode("utf-8")).hexdigest()
        return f"@u_{h[-6:]}"
