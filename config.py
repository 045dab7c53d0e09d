from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./university.db"
    DB_ECHO: bool = False

    # "database" keeps records in DATABASE_URL, "memory" keeps them in-process only
    STORAGE_BACKEND: Literal["database", "memory"] = "database"

    # Session cookie
    SESSION_SECRET_KEY: str = "change-this-session-secret-in-production"
    SESSION_COOKIE_NAME: str = "university_session"
    SESSION_MAX_AGE: int = 24 * 60 * 60

    # Faculty may only view/grade enrollments of courses they teach
    ENFORCE_INSTRUCTOR_OWNERSHIP: bool = True

    # Anyone may register as admin unless this is switched off
    ALLOW_ADMIN_REGISTRATION: bool = True

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
