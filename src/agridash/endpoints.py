LOGIN = "/api/auth/login/"
CURRENT_USER = "/api/auth/user/"
LOGOUT = "/api/auth/logout/"
TOKEN_REFRESH = "/api/auth/token/refresh/"
SIGNUP = "/api/auth/signup/"

TABLE_DATA = "/api/table/data/"
FORM_SUBMIT = "/api/form/submit/"


def crop_detail(crop_id: str | int) -> str:
    return f"/api/crops/{crop_id}/"
