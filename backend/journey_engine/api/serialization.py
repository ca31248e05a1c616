from journey_engine.models.journey_step import JourneyStep

# Internal bookkeeping that never leaves the service.
PRIVATE_FIELDS = {"id", "revision_id", "locked_until", "lock_token"}


def to_public(document) -> dict:
    data = document.model_dump(mode="json", exclude=PRIVATE_FIELDS)
    if isinstance(document, JourneyStep):
        data["step_type"] = document.step_type
    return data
