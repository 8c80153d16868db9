"""
main.py
=======
FastAPI application entry point.

Endpoints:
  POST   /products                  - Add a product to the catalog
  GET    /products                  - List products
  GET    /products/{ref}            - Get product by reference
  GET    /products/{ref}/price      - Current sale price of a product
  POST   /campaigns                 - Create a campaign
  GET    /campaigns                 - List campaigns
  GET    /campaigns/{id}            - Get campaign by ID
  PUT    /campaigns/{id}            - Update campaign
  POST   /campaigns/{id}/rules      - Add a rule line to a campaign
  GET    /rules                     - List all rule lines
  GET    /rules/active              - Rule lines of a kind that may apply right now
  GET    /rules/{id}                - Get rule line by ID
  PUT    /rules/{id}                - Update rule line
  DELETE /rules/{id}                - Delete rule line
  POST   /promotions/evaluate       - Price a cart with every applicable promotion
"""

import logging
from datetime import datetime, timezone
from typing import List

from fastapi import FastAPI, HTTPException, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

import models
import schemas
import promotion_engine
from catalog import SqlCatalog
from config import settings
from database import engine, get_db
from exceptions import PromotionError

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# Create DB tables on startup
models.Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Promotions Engine API",
    description="Resolves product, buy-X-get-Y and order-level promotions for a cart and prices it.",
    version="1.0.0",
)


@app.exception_handler(PromotionError)
def promotion_error_handler(request: Request, exc: PromotionError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _get_campaign_or_404(db: Session, campaign_id: int) -> models.PromotionCampaign:
    campaign = db.query(models.PromotionCampaign).filter(models.PromotionCampaign.id == campaign_id).first()
    if not campaign:
        raise HTTPException(status_code=404, detail=f"Campaign with id={campaign_id} not found")
    return campaign


def _get_rule_or_404(db: Session, rule_id: int) -> models.PromotionRule:
    rule = db.query(models.PromotionRule).filter(models.PromotionRule.id == rule_id).first()
    if not rule:
        raise HTTPException(status_code=404, detail=f"Rule with id={rule_id} not found")
    return rule


# ═══════════════════════════════════════════════════
#  PRODUCT CATALOG
# ═══════════════════════════════════════════════════

@app.post(
    "/products",
    response_model=schemas.ProductResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Catalog"],
    summary="Add a product",
)
def create_product(product: schemas.ProductCreate, db: Session = Depends(get_db)):
    if db.query(models.Product).filter(models.Product.ref == product.ref).first():
        raise HTTPException(status_code=409, detail=f"Product '{product.ref}' already exists")
    db_product = models.Product(**product.model_dump())
    db.add(db_product)
    db.commit()
    db.refresh(db_product)
    return db_product


@app.get(
    "/products",
    response_model=List[schemas.ProductResponse],
    tags=["Catalog"],
    summary="List products",
)
def list_products(db: Session = Depends(get_db)):
    return db.query(models.Product).order_by(models.Product.id).all()


@app.get(
    "/products/{ref}",
    response_model=schemas.CatalogProduct,
    tags=["Catalog"],
    summary="Get a product by reference",
)
def get_product(ref: str, db: Session = Depends(get_db)):
    return SqlCatalog(db).resolve_product(ref)


@app.get("/products/{ref}/price", tags=["Catalog"], summary="Current sale price")
def get_product_price(ref: str, db: Session = Depends(get_db)):
    price = SqlCatalog(db).get_current_price(ref)
    return {"product_ref": ref, "price": str(promotion_engine.round_money(price))}


# ═══════════════════════════════════════════════════
#  CAMPAIGNS
# ═══════════════════════════════════════════════════

@app.post(
    "/campaigns",
    response_model=schemas.CampaignResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Campaigns"],
    summary="Create a campaign",
)
def create_campaign(campaign: schemas.CampaignCreate, db: Session = Depends(get_db)):
    db_campaign = models.PromotionCampaign(
        name=campaign.name,
        description=campaign.description,
        status=campaign.status.value,
        start_at=campaign.start_at,
        end_at=campaign.end_at,
    )
    db.add(db_campaign)
    db.commit()
    db.refresh(db_campaign)
    return db_campaign


@app.get(
    "/campaigns",
    response_model=List[schemas.CampaignResponse],
    tags=["Campaigns"],
    summary="List campaigns",
)
def list_campaigns(db: Session = Depends(get_db)):
    return db.query(models.PromotionCampaign).order_by(models.PromotionCampaign.id).all()


@app.get(
    "/campaigns/{campaign_id}",
    response_model=schemas.CampaignResponse,
    tags=["Campaigns"],
    summary="Get a campaign by ID",
)
def get_campaign(campaign_id: int, db: Session = Depends(get_db)):
    return _get_campaign_or_404(db, campaign_id)


@app.put(
    "/campaigns/{campaign_id}",
    response_model=schemas.CampaignResponse,
    tags=["Campaigns"],
    summary="Update a campaign",
)
def update_campaign(campaign_id: int, update_data: schemas.CampaignUpdate, db: Session = Depends(get_db)):
    """Only provided fields are updated. Rules of a paused campaign stop applying; their own status is untouched."""
    campaign = _get_campaign_or_404(db, campaign_id)

    if update_data.name is not None:
        campaign.name = update_data.name
    if update_data.description is not None:
        campaign.description = update_data.description
    if update_data.status is not None:
        campaign.status = update_data.status.value
    if update_data.start_at is not None:
        campaign.start_at = update_data.start_at
    if update_data.end_at is not None:
        campaign.end_at = update_data.end_at

    if campaign.end_at < campaign.start_at:
        raise HTTPException(status_code=422, detail="end_at must not precede start_at")

    db.commit()
    db.refresh(campaign)
    return campaign


# ═══════════════════════════════════════════════════
#  RULE LINES
# ═══════════════════════════════════════════════════

@app.post(
    "/campaigns/{campaign_id}/rules",
    response_model=schemas.RuleResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Rules"],
    summary="Add a rule line to a campaign",
)
def create_rule(campaign_id: int, rule: schemas.RuleCreate, db: Session = Depends(get_db)):
    """
    Add a rule line. Supports three kinds:
    - **BUY_X_GET_Y**: buying enough of one product earns gift units of another.
    - **PRODUCT_DISCOUNT**: percentage or fixed amount off a cart line.
    - **ORDER_DISCOUNT**: percentage (optionally capped) or fixed amount off the order.
    """
    _get_campaign_or_404(db, campaign_id)
    db_rule = models.PromotionRule(
        campaign_id=campaign_id,
        code=rule.code,
        description=rule.description,
        kind=rule.kind.value,
        status=rule.status.value,
        start_at=rule.start_at,
        end_at=rule.end_at,
        max_total_usage=rule.max_total_usage,
        current_usage_count=0,
        details=rule.details,
    )
    db.add(db_rule)
    db.commit()
    db.refresh(db_rule)
    return db_rule


@app.get(
    "/rules",
    response_model=List[schemas.RuleResponse],
    tags=["Rules"],
    summary="List all rule lines",
)
def list_rules(db: Session = Depends(get_db)):
    return db.query(models.PromotionRule).order_by(models.PromotionRule.id).all()


@app.get(
    "/rules/active",
    response_model=List[schemas.RuleSnapshot],
    tags=["Rules"],
    summary="Rule lines of a kind that may apply right now",
)
def list_active_rules(kind: schemas.RuleKind, db: Session = Depends(get_db)):
    return promotion_engine.active_rules(SqlCatalog(db), kind, datetime.now(timezone.utc))


@app.get(
    "/rules/{rule_id}",
    response_model=schemas.RuleResponse,
    tags=["Rules"],
    summary="Get a rule line by ID",
)
def get_rule(rule_id: int, db: Session = Depends(get_db)):
    return _get_rule_or_404(db, rule_id)


@app.put(
    "/rules/{rule_id}",
    response_model=schemas.RuleResponse,
    tags=["Rules"],
    summary="Update a rule line",
)
def update_rule(rule_id: int, update_data: schemas.RuleUpdate, db: Session = Depends(get_db)):
    """
    Update a rule line. All fields are optional; new details are validated against the rule's kind.
    """
    rule = _get_rule_or_404(db, rule_id)

    if update_data.details is not None:
        schema = schemas.DETAIL_SCHEMAS[schemas.RuleKind(rule.kind)]
        try:
            rule.details = schema.model_validate(update_data.details).model_dump(mode="json")
        except ValueError as e:
            raise HTTPException(status_code=422, detail=f"Invalid details for {rule.kind}: {e}")
    if update_data.description is not None:
        rule.description = update_data.description
    if update_data.status is not None:
        rule.status = update_data.status.value
    if update_data.start_at is not None:
        rule.start_at = update_data.start_at
    if update_data.end_at is not None:
        rule.end_at = update_data.end_at
    if update_data.max_total_usage is not None:
        rule.max_total_usage = update_data.max_total_usage

    if rule.end_at < rule.start_at:
        raise HTTPException(status_code=422, detail="end_at must not precede start_at")

    db.commit()
    db.refresh(rule)
    return rule


@app.delete(
    "/rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Rules"],
    summary="Delete a rule line",
)
def delete_rule(rule_id: int, db: Session = Depends(get_db)):
    rule = _get_rule_or_404(db, rule_id)
    db.delete(rule)
    db.commit()
    return None


# ═══════════════════════════════════════════════════
#  EVALUATION
# ═══════════════════════════════════════════════════

@app.post(
    "/promotions/evaluate",
    response_model=schemas.EvaluationResult,
    tags=["Promotions"],
    summary="Price a cart with every applicable promotion",
)
def evaluate_cart(request: schemas.CartRequest, db: Session = Depends(get_db)):
    """
    Given a cart (list of product_ref and quantity), returns:
    - Each priced line, with its applied product discount if any.
    - A gift line for every buy-X-get-Y rule the cart triggers.
    - Subtotal, line discounts, order discount and grand total.

    This is a preview: usage quotas are read, never consumed.
    """
    return promotion_engine.evaluate(request.items, SqlCatalog(db))


# ═══════════════════════════════════════════════════
#  HEALTH CHECK
# ═══════════════════════════════════════════════════

@app.get("/", tags=["Health"], summary="Health check")
def root():
    return {"status": "ok", "message": "Promotions Engine API is running"}
