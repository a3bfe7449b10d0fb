"""Flow Manager for flow definition storage, validation and loading."""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import ValidationError
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..models.core import Flow, FlowDefinition, FlowUpdate, ValidationResult
from ..storage.database import get_db
from ..storage.models import FlowModel
from .exceptions import FlowNotFoundError, FlowValidationError, StorageError
from .logging import get_logger
from .triggers import matches_trigger, module_for_context

logger = get_logger(__name__)


def _validation_messages(error: ValidationError) -> List[str]:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        messages.append(f"{location}: {item['msg']}" if location else item["msg"])
    return messages


def parse_flow_definition(data: Dict[str, Any]) -> FlowDefinition:
    """
    Parse raw flow JSON into a FlowDefinition.

    Raises:
        FlowValidationError: If the payload is not a valid flow
    """
    try:
        return FlowDefinition.model_validate(data)
    except ValidationError as e:
        errors = _validation_messages(e)
        raise FlowValidationError(
            f"Flow validation failed: {'; '.join(errors)}",
            validation_errors=errors,
            flow_name=data.get("name") if isinstance(data, dict) else None
        )


class FlowManager:
    """Manages flow definitions, validation, and storage."""

    def __init__(self, db_session: Optional[Session] = None):
        """Initialize FlowManager with optional database session."""
        self._db_session = db_session

    def _get_db_session(self) -> Session:
        """Get database session, creating one if not provided."""
        if self._db_session:
            return self._db_session
        return next(get_db())

    def _release(self, db: Session) -> None:
        if db is not self._db_session:
            db.close()

    def create_flow(self, flow_definition: FlowDefinition) -> Flow:
        """
        Store a new flow.

        Args:
            flow_definition: The flow definition to store

        Returns:
            Flow: The stored flow with its generated ID

        Raises:
            StorageError: If storage operation fails
        """
        logger.info(f"Creating new flow: {flow_definition.name}")

        validation_result = self.validate_flow(flow_definition)
        if validation_result.warnings:
            logger.warning(f"Flow validation warnings: {'; '.join(validation_result.warnings)}")

        flow_id = str(uuid.uuid4())
        now = datetime.utcnow()
        db = self._get_db_session()
        try:
            flow_model = FlowModel(id=flow_id, created_at=now, updated_at=now)
            self._apply_definition(flow_model, flow_definition)

            db.add(flow_model)
            db.commit()
            db.refresh(flow_model)

            logger.info(f"Successfully created flow '{flow_definition.name}' with ID: {flow_id}")
            return self._to_flow(flow_model)

        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while creating flow: {str(e)}")
            raise StorageError(f"Failed to store flow: {str(e)}", operation="create_flow", table="flows")
        finally:
            self._release(db)

    def get_flow(self, flow_id: str) -> Flow:
        """
        Retrieve a flow by its ID, active or not.

        Raises:
            FlowNotFoundError: If no flow has this ID
            StorageError: If storage operation fails
        """
        logger.debug(f"Retrieving flow with ID: {flow_id}")

        db = self._get_db_session()
        try:
            flow_model = db.query(FlowModel).filter(FlowModel.id == flow_id).first()
            if not flow_model:
                raise FlowNotFoundError(f"Flow with ID '{flow_id}' not found", flow_id=flow_id)
            return self._to_flow(flow_model)

        except SQLAlchemyError as e:
            logger.error(f"Database error while retrieving flow: {str(e)}")
            raise StorageError(f"Failed to retrieve flow: {str(e)}", operation="get_flow", table="flows")
        finally:
            self._release(db)

    def load_active_flow(self, flow_id: str) -> Flow:
        """
        Load a flow for execution.

        Raises:
            FlowNotFoundError: If the flow does not exist or is inactive
            FlowValidationError: If the stored definition no longer parses
        """
        db = self._get_db_session()
        try:
            flow_model = (
                db.query(FlowModel)
                .filter(FlowModel.id == flow_id, FlowModel.is_active.is_(True))
                .first()
            )
            if not flow_model:
                raise FlowNotFoundError("Flow not found or inactive", flow_id=flow_id)
            return self._to_flow(flow_model)

        except SQLAlchemyError as e:
            logger.error(f"Database error while loading flow: {str(e)}")
            raise StorageError(f"Failed to load flow: {str(e)}", operation="load_active_flow", table="flows")
        finally:
            self._release(db)

    def list_flows(
        self,
        module: Optional[str] = None,
        category: Optional[str] = None,
        is_active: Optional[bool] = None,
        tag: Optional[str] = None
    ) -> List[Flow]:
        """
        List flows, highest priority first, then newest first.

        Raises:
            StorageError: If storage operation fails
        """
        db = self._get_db_session()
        try:
            query = db.query(FlowModel)
            if module:
                query = query.filter(FlowModel.module == module)
            if category:
                query = query.filter(FlowModel.category == category)
            if is_active is not None:
                query = query.filter(FlowModel.is_active.is_(is_active))

            flow_models = query.order_by(FlowModel.priority.desc(), FlowModel.created_at.desc()).all()

            # tags are a JSON column, filtered here to stay portable across backends
            if tag:
                flow_models = [model for model in flow_models if tag in (model.tags or [])]

            flows = [self._to_flow(model) for model in flow_models]
            logger.debug(f"Retrieved {len(flows)} flows")
            return flows

        except SQLAlchemyError as e:
            logger.error(f"Database error while listing flows: {str(e)}")
            raise StorageError(f"Failed to list flows: {str(e)}", operation="list_flows", table="flows")
        finally:
            self._release(db)

    def find_matching_flows(
        self,
        context_type: str,
        triggered_by_type: Optional[str] = None,
        input_data: Optional[Dict[str, Any]] = None
    ) -> List[Flow]:
        """
        Active flows of the context's module whose trigger accepts the event.

        Returns:
            Matching flows, highest priority first

        Raises:
            StorageError: If storage operation fails
        """
        module = module_for_context(context_type)
        candidates = self.list_flows(module=module, is_active=True)
        matching = [flow for flow in candidates if matches_trigger(flow, triggered_by_type, input_data)]
        logger.debug(
            f"{len(matching)} of {len(candidates)} active flows in module '{module}' "
            f"match {context_type} triggered by {triggered_by_type or 'system'}"
        )
        return matching

    def update_flow(self, flow_id: str, update: FlowUpdate) -> Flow:
        """
        Apply a partial update and re-validate the resulting definition.

        Raises:
            FlowNotFoundError: If no flow has this ID
            FlowValidationError: If the updated flow is invalid
            StorageError: If storage operation fails
        """
        logger.info(f"Updating flow with ID: {flow_id}")

        db = self._get_db_session()
        try:
            flow_model = db.query(FlowModel).filter(FlowModel.id == flow_id).first()
            if not flow_model:
                raise FlowNotFoundError(f"Flow with ID '{flow_id}' not found", flow_id=flow_id)

            current = self._to_flow(flow_model).model_dump(
                mode="json", by_alias=True, exclude={"id", "created_at", "updated_at"}
            )
            current.update(update.model_dump(exclude_unset=True))
            definition = parse_flow_definition(current)

            validation_result = self.validate_flow(definition)
            if validation_result.warnings:
                logger.warning(f"Flow validation warnings: {'; '.join(validation_result.warnings)}")

            self._apply_definition(flow_model, definition)
            flow_model.updated_at = datetime.utcnow()
            db.commit()
            db.refresh(flow_model)

            logger.info(f"Successfully updated flow: {flow_id}")
            return self._to_flow(flow_model)

        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while updating flow: {str(e)}")
            raise StorageError(f"Failed to update flow: {str(e)}", operation="update_flow", table="flows")
        finally:
            self._release(db)

    def delete_flow(self, flow_id: str) -> bool:
        """
        Delete a flow and its execution history.

        Returns:
            bool: True if the flow was deleted, False if not found

        Raises:
            StorageError: If storage operation fails
        """
        logger.info(f"Deleting flow with ID: {flow_id}")

        db = self._get_db_session()
        try:
            flow_model = db.query(FlowModel).filter(FlowModel.id == flow_id).first()
            if not flow_model:
                logger.warning(f"Flow with ID '{flow_id}' not found for deletion")
                return False

            db.delete(flow_model)
            db.commit()

            logger.info(f"Successfully deleted flow with ID: {flow_id}")
            return True

        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while deleting flow: {str(e)}")
            raise StorageError(f"Failed to delete flow: {str(e)}", operation="delete_flow", table="flows")
        finally:
            self._release(db)

    def validate_flow(self, flow_definition: FlowDefinition) -> ValidationResult:
        """
        Report graph-shape warnings for a parsed flow.

        Structural errors (duplicate ids, dangling edges, bad node configs)
        are rejected while parsing, so a parsed definition is always valid.
        """
        result = flow_definition.validate_structure()
        logger.debug(
            f"Flow validation completed for '{flow_definition.name}'. "
            f"Warnings: {len(result.warnings)}"
        )
        return result

    def validate_payload(self, data: Dict[str, Any]) -> ValidationResult:
        """Validate raw flow JSON without storing it."""
        try:
            definition = parse_flow_definition(data)
        except FlowValidationError as e:
            return ValidationResult(is_valid=False, errors=e.validation_errors or [e.message], warnings=[])
        return self.validate_flow(definition)

    @staticmethod
    def _apply_definition(flow_model: FlowModel, definition: FlowDefinition) -> None:
        data = definition.model_dump(mode="json", by_alias=True)
        flow_model.name = data["name"]
        flow_model.description = data["description"]
        flow_model.module = data["module"]
        flow_model.category = data["category"]
        flow_model.trigger_type = data["trigger_type"]
        flow_model.trigger_config = data["trigger_config"]
        flow_model.nodes = data["nodes"]
        flow_model.edges = data["edges"]
        flow_model.ai_prompt = data["ai_prompt"]
        flow_model.ai_model = data["ai_model"]
        flow_model.is_active = data["is_active"]
        flow_model.priority = data["priority"]
        flow_model.tags = data["tags"]
        flow_model.flow_metadata = data["metadata"]

    @staticmethod
    def _to_flow(flow_model: FlowModel) -> Flow:
        """Convert a stored row back into a Flow, parsing node configs."""
        data = {
            "id": flow_model.id,
            "name": flow_model.name,
            "description": flow_model.description,
            "module": flow_model.module,
            "category": flow_model.category,
            "trigger_type": flow_model.trigger_type,
            "trigger_config": flow_model.trigger_config or {},
            "nodes": flow_model.nodes or [],
            "edges": flow_model.edges or [],
            "ai_prompt": flow_model.ai_prompt,
            "ai_model": flow_model.ai_model,
            "is_active": flow_model.is_active,
            "priority": flow_model.priority or 0,
            "tags": flow_model.tags or [],
            "metadata": flow_model.flow_metadata or {},
            "created_at": flow_model.created_at,
            "updated_at": flow_model.updated_at,
        }
        try:
            return Flow.model_validate(data)
        except ValidationError as e:
            errors = _validation_messages(e)
            raise FlowValidationError(
                f"Stored flow '{flow_model.id}' is invalid: {'; '.join(errors)}",
                validation_errors=errors,
                flow_name=flow_model.name
            )
