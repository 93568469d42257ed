# backend/app/api/v1/endpoints/auth.py
from fastapi import APIRouter, Depends, status

from backend.app.api.deps import get_auth_service, get_client_context
from backend.app.schemas.auth import (
    ApiResponse,
    CheckAvailabilityRequest,
    CheckAvailabilityResponse,
    LoginInitRequest,
    LoginInitResponse,
    LoginVerifyRequest,
    LoginVerifyResponse,
    RegisterCompleteRequest,
    RegisterCompleteResponse,
    RegisterInitRequest,
    RegisterInitResponse,
    UserOut,
)
from backend.app.services.auth import AuthService, ClientContext

router = APIRouter()


@router.post("/check-availability", response_model=ApiResponse[CheckAvailabilityResponse])
async def check_availability(
    body: CheckAvailabilityRequest,
    auth: AuthService = Depends(get_auth_service),
):
    result = await auth.check_availability(email=body.email, username=body.username)
    return ApiResponse(data=CheckAvailabilityResponse(**result))


@router.post("/register/init", response_model=ApiResponse[RegisterInitResponse])
async def register_init(
    body: RegisterInitRequest,
    auth: AuthService = Depends(get_auth_service),
    client: ClientContext = Depends(get_client_context),
):
    token = await auth.register_init(body.email, body.username, client)
    return ApiResponse(data=RegisterInitResponse(registration_token=token))


@router.post(
    "/register/complete",
    response_model=ApiResponse[RegisterCompleteResponse],
    status_code=status.HTTP_201_CREATED,
)
async def register_complete(
    body: RegisterCompleteRequest,
    auth: AuthService = Depends(get_auth_service),
    client: ClientContext = Depends(get_client_context),
):
    # Only client-derived SRP parameters; no password ever reaches this route
    user = await auth.register_complete(
        email=body.email,
        username=body.username,
        srp_salt=body.srp_salt,
        srp_verifier=body.srp_verifier,
        vault_key_encrypted=body.vault_key_encrypted,
        public_key=body.public_key,
        private_key_encrypted=body.private_key_encrypted,
        client=client,
    )
    return ApiResponse(data=RegisterCompleteResponse(user=UserOut.model_validate(user)))


@router.post("/login/init", response_model=ApiResponse[LoginInitResponse])
async def login_init(
    body: LoginInitRequest,
    auth: AuthService = Depends(get_auth_service),
    client: ClientContext = Depends(get_client_context),
):
    challenge = await auth.login_init(body.identifier, client)
    return ApiResponse(
        data=LoginInitResponse(
            session_id=challenge.session_id,
            server_public_key=challenge.server_public_key,
            salt=challenge.salt,
        )
    )


@router.post("/login/verify", response_model=ApiResponse[LoginVerifyResponse])
async def login_verify(
    body: LoginVerifyRequest,
    auth: AuthService = Depends(get_auth_service),
    client: ClientContext = Depends(get_client_context),
):
    result = await auth.login_verify(
        str(body.session_id), body.client_public_key, body.client_proof, client
    )
    # The SRP session key and any key derived from it stay in-process
    return ApiResponse(
        data=LoginVerifyResponse(user=UserOut.model_validate(result.user), server_proof=result.server_proof)
    )
