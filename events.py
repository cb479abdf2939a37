import json
import logging

logger = logging.getLogger("car_rental.events")

def emit(event: str, **details):
    """Registra un evento del ciclo de vida (reserva, pago, login...).

    Nunca lanza.
    """
    try:
        logger.info("%s %s", event, json.dumps(details, default=str, sort_keys=True))
    except Exception:
        logger.debug("could not record event %s", event, exc_info=True)
