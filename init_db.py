import logging

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from storefront import models  # noqa: F401  registers tables on Base.metadata
from storefront.config import settings
from storefront.db import Base, make_engine

logger = logging.getLogger("init_db")


def main() -> None:
    logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    engine = make_engine(settings.database_url)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("DB connection OK")
        Base.metadata.create_all(bind=engine)
        logger.info("schema ready: %s", ", ".join(sorted(Base.metadata.tables)))
    except SQLAlchemyError:
        logger.exception("DB initialisation FAILED")
        raise SystemExit(1)
    finally:
        engine.dispose()


if __name__ == "__main__":
    main()
