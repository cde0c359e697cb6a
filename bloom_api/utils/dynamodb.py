"""
DynamoDB utilities for the long-running action table

Provides functions for building DynamoDB update expressions, including the
conditions that keep terminal action states from being overwritten.
"""

from __future__ import annotations

from typing import Any, Dict


def build_update_expression(
    fields: dict[str, Any], allow_remove: bool = False
) -> tuple[str, dict[str, Any], dict[str, str]]:
    """
    Build DynamoDB update expression from a dictionary of fields.

    Args:
        fields: Dictionary of field names to values
        allow_remove: If True, None values will REMOVE the attribute

    Returns:
        tuple: (update_expression, expression_attribute_values, expression_attribute_names)

    Example:
        fields = {"status": "Completed", "output": None}
        expr, values, names = build_update_expression(fields, allow_remove=True)
        # expr = "SET #status = :status REMOVE #output"
        # values = {":status": "Completed"}
        # names = {"#status": "status", "#output": "output"}
    """
    set_parts = []
    remove_parts = []
    expr_attr_values: dict[str, Any] = {}
    expr_attr_names: dict[str, str] = {}

    for field, value in fields.items():
        # Placeholders avoid reserved words like "status"
        name_placeholder = f"#{field}"
        value_placeholder = f":{field}"
        expr_attr_names[name_placeholder] = field

        if allow_remove and value is None:
            remove_parts.append(name_placeholder)
        else:
            set_parts.append(f"{name_placeholder} = {value_placeholder}")
            expr_attr_values[value_placeholder] = value

    clauses = []
    if set_parts:
        clauses.append("SET " + ", ".join(set_parts))
    if remove_parts:
        clauses.append("REMOVE " + ", ".join(remove_parts))

    return " ".join(clauses), expr_attr_values, expr_attr_names


def build_update_params(
    key: Dict[str, Any],
    fields: Dict[str, Any],
    allow_remove: bool = False,
    condition_expression: str | None = None,
    condition_values: Dict[str, Any] | None = None,
    condition_names: Dict[str, str] | None = None,
    return_values: str = "NONE",
) -> Dict[str, Any]:
    """
    Build complete DynamoDB update_item parameters.

    Condition placeholders are merged with the update placeholders, so a
    condition may refer to a field that is also being set.

    Args:
        key: Primary key for the item to update
        fields: Dictionary of field names to values
        allow_remove: If True, None values will REMOVE the attribute
        condition_expression: Optional condition expression
        condition_values: Values for placeholders used only by the condition
        condition_names: Names for placeholders used only by the condition
        return_values: Return values option (default: NONE)

    Returns:
        dict: Complete parameters for table.update_item()

    Example:
        params = build_update_params(
            key={"id": "3f2c..."},
            fields={"status": "Running"},
            condition_expression="#status IN (:pending, :running)",
            condition_values={":pending": "Pending", ":running": "Running"},
        )
        table.update_item(**params)
    """
    update_expression, expr_values, expr_names = build_update_expression(
        fields, allow_remove=allow_remove
    )
    expr_values = {**expr_values, **(condition_values or {})}
    expr_names = {**expr_names, **(condition_names or {})}

    params: Dict[str, Any] = {
        "Key": key,
        "UpdateExpression": update_expression,
        "ExpressionAttributeNames": expr_names,
        "ReturnValues": return_values,
    }

    # REMOVE-only updates have no values, and DynamoDB rejects an empty map
    if expr_values:
        params["ExpressionAttributeValues"] = expr_values

    if condition_expression:
        params["ConditionExpression"] = condition_expression

    return params
