from enum import Enum


class AuditCategory(str, Enum):
    MATERIAL_REQUEST = "MATERIAL_REQUEST"
    ATTENDANCE = "ATTENDANCE"
    WAGES = "WAGES"
    PROJECT_SETTINGS = "PROJECT_SETTINGS"
    LABOUR_REQUEST = "LABOUR_REQUEST"
    SECURITY = "SECURITY"
